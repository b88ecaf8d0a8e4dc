import logging
import logging.config
import sys
from typing import Optional


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
	"""
	Configure process-wide logging.

	Args:
		log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
		log_file: Optional log file path. If None, logs to stdout only.
	"""
	log_config = {
		"version": 1,
		"disable_existing_loggers": False,
		"formatters": {
			"detailed": {
				"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
			},
		},
		"handlers": {
			"console": {
				"class": "logging.StreamHandler",
				"level": log_level,
				"formatter": "detailed",
				"stream": sys.stdout,
			}
		},
		"loggers": {
			"": {
				"level": log_level,
				"handlers": ["console"],
			},
			# Kafka client and scheduler internals are chatty at INFO
			"apscheduler": {"level": "WARNING"},
			"confluent_kafka": {"level": "WARNING"},
		},
	}

	if log_file:
		log_config["handlers"]["file"] = {
			"class": "logging.handlers.RotatingFileHandler",
			"level": log_level,
			"formatter": "detailed",
			"filename": log_file,
			"maxBytes": 10485760,  # 10MB
			"backupCount": 5,
		}
		log_config["loggers"][""]["handlers"].append("file")

	logging.config.dictConfig(log_config)
	logging.getLogger(__name__).info(f"Logging configured at {log_level}")
