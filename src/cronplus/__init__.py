"""CronPlus -- 目录监听驱动的文件流水线引擎"""

__version__ = "0.1.0"
