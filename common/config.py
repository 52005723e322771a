#!/usr/bin/env python3

import os
from configparser import ConfigParser
from dataclasses import dataclass

CONSUMER_ROLE = "consumer"
PRODUCER_ROLE = "producer"
ROLES = (CONSUMER_ROLE, PRODUCER_ROLE)


@dataclass
class ConsumerConfig:
    """Configuration for the consumer role"""

    amqp_uri: str
    exchange: str
    exchange_type: str
    queue: str
    binding_key: str
    consumer_tag: str
    setup_timeout: float
    shutdown_timeout: float


@dataclass
class ProducerConfig:
    """Configuration for the producer role"""

    amqp_uri: str
    exchange: str
    exchange_type: str
    routing_key: str
    body: bytes
    reliable: bool
    publish_interval: float
    publish_timeout: float


@dataclass
class LogConfig:
    logging_level: str


def _parse_bool(value):
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"invalid boolean value: {value!r}")


def _parse_timeout(value):
    timeout = float(value)
    if timeout <= 0:
        raise ValueError(f"timeout must be positive, got {value!r}")
    return timeout


def initialize_config(config_path="config.ini", environ=None):
    """Parse config file to find program config params

    Environment variables take precedence over config file values. The ROLE
    parameter selects which role is configured. If a required parameter is
    missing a KeyError is raised; if one could not be parsed, a ValueError.
    Timeouts have no defaults and must always be given.

    Returns a (role, role_config, log_config) tuple
    """
    environ = os.environ if environ is None else environ
    config = ConfigParser(interpolation=None)

    # Read config file - raise error if it doesn't exist or can't be read
    config_files_read = config.read(config_path)
    if not config_files_read:
        raise KeyError(
            f"Configuration file '{config_path}' not found or could not be read"
        )

    def _get_required_config(key):
        """Get configuration value from environment variable or config file, raise error if missing"""
        env_value = environ.get(key)
        if env_value is not None:
            return env_value

        try:
            return config["DEFAULT"][key]
        except KeyError:
            raise KeyError(
                f"Required configuration parameter '{key}' not found in environment or config file"
            )

    def _get_optional_config(key, default):
        try:
            return _get_required_config(key)
        except KeyError:
            return default

    try:
        log_config = LogConfig(logging_level=_get_required_config("LOGGING_LEVEL"))

        role = _get_required_config("ROLE").strip().lower()
        if role not in ROLES:
            raise ValueError(f"ROLE must be one of {ROLES}, got {role!r}")

        if role == CONSUMER_ROLE:
            role_config = ConsumerConfig(
                amqp_uri=_get_required_config("AMQP_URI"),
                exchange=_get_required_config("EXCHANGE"),
                exchange_type=_get_optional_config("EXCHANGE_TYPE", "topic"),
                queue=_get_optional_config("QUEUE", ""),
                binding_key=_get_optional_config("BINDING_KEY", ""),
                consumer_tag=_get_optional_config("CONSUMER_TAG", ""),
                setup_timeout=_parse_timeout(_get_required_config("SETUP_TIMEOUT")),
                shutdown_timeout=_parse_timeout(_get_required_config("SHUTDOWN_TIMEOUT")),
            )
        else:
            role_config = ProducerConfig(
                amqp_uri=_get_required_config("AMQP_URI"),
                exchange=_get_required_config("EXCHANGE"),
                exchange_type=_get_optional_config("EXCHANGE_TYPE", "topic"),
                routing_key=_get_optional_config("ROUTING_KEY", ""),
                body=_get_optional_config("BODY", "{}").encode("utf-8"),
                reliable=_parse_bool(_get_optional_config("RELIABLE", "false")),
                publish_interval=float(_get_optional_config("PUBLISH_INTERVAL", "10")),
                publish_timeout=_parse_timeout(_get_required_config("PUBLISH_TIMEOUT")),
            )

    except KeyError as e:
        raise KeyError("Configuration error: {}. Aborting".format(e))
    except ValueError as e:
        raise ValueError("Configuration parsing error: {}. Aborting".format(e))

    return role, role_config, log_config
