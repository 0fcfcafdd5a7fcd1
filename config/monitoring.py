# config/monitoring.py

import os


class MonitoringConfig:
    """Monitoring and logging configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    APP_NAME = os.environ.get("APP_NAME", "Supporter 360")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False
