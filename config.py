"""
Configuration module for minidag.
Loads settings from environment variables or .env file.
minidag 配置模块。
从环境变量或 .env 文件加载所有配置项。
"""

import os
from dotenv import load_dotenv

load_dotenv()  # 自动读取项目根目录的 .env 文件（若存在），优先级低于系统环境变量

# --- Scheduler ---
# --- 调度器 ---
MAX_ACTIVE_TASKS = int(os.getenv("MAX_ACTIVE_TASKS", "16"))              # 单个 Run 同时在途的任务数上限
SCHEDULER_HEARTBEAT = float(os.getenv("SCHEDULER_HEARTBEAT", "1.0"))     # 调度循环空等时的最长等待（秒）
MAX_CHECKPOINTS = int(os.getenv("MAX_CHECKPOINTS", "100"))               # 每个 Run 保留的状态快照条数

# --- Executor ---
# --- 执行器 ---
EXECUTOR_PARALLELISM = int(os.getenv("EXECUTOR_PARALLELISM", "8"))       # 执行器池大小（全局并发上限）

# --- Retries ---
# --- 重试策略默认值 ---
DEFAULT_RETRIES = int(os.getenv("DEFAULT_RETRIES", "0"))                         # 默认重试次数
DEFAULT_RETRY_DELAY = float(os.getenv("DEFAULT_RETRY_DELAY", "300"))             # 默认重试间隔（秒）
RETRY_EXPONENTIAL_BACKOFF = os.getenv("RETRY_EXPONENTIAL_BACKOFF", "false").lower() == "true"  # 是否指数退避
MAX_RETRY_DELAY = float(os.getenv("MAX_RETRY_DELAY", "3600"))                    # 退避上限（秒）

# --- Sensors ---
# --- 传感器 ---
SENSOR_POKE_INTERVAL = float(os.getenv("SENSOR_POKE_INTERVAL", "60"))    # 两次 poke 之间的间隔（秒）
SENSOR_TIMEOUT = float(os.getenv("SENSOR_TIMEOUT", str(7 * 24 * 3600)))  # 传感器总超时（秒）

# --- Operators ---
# --- 算子参数 ---
BASH_TIMEOUT = float(os.getenv("BASH_TIMEOUT", "3600"))                  # Shell 命令执行超时（秒）
