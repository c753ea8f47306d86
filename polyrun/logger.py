import sys
from datetime import datetime

from loguru import logger as _logger

from polyrun.config import PROJECT_ROOT, config

_print_level = "INFO"


def define_log_level(print_level="INFO", logfile_level="DEBUG", name: str = None):
    """将日志级别调整为高于当前级别"""
    global _print_level
    _print_level = print_level

    current_date = datetime.now()
    formatted_date = current_date.strftime("%Y%m%d")
    # 日志文件名格式为 "name_YYYYMMDD" 或 "YYYYMMDD"
    log_name = f"{name}_{formatted_date}" if name else formatted_date

    _logger.remove()
    _logger.add(sys.stderr, level=print_level)
    _logger.add(PROJECT_ROOT / f"logs/{log_name}.log", level=logfile_level)
    return _logger


logger = define_log_level(config.log.level, config.log.file_level)
