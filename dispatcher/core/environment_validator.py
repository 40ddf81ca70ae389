"""
Environment Validator

Validates the environment variables the dispatch service needs before it
touches the broker, the database or Mailgun. Values are read from the process
environment at call time so a validation run reflects what the container
actually received.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class VariableType(Enum):
    """Types of environment variables for validation"""
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    URL = "url"
    EMAIL = "email"
    SECRET = "secret"  # API keys, passwords


@dataclass
class EnvironmentVariable:
    """Definition of an environment variable with validation rules"""
    name: str
    description: str
    variable_type: VariableType
    required: bool = True
    validation_pattern: Optional[str] = None
    sensitive: bool = False


@dataclass
class ValidationResult:
    """Result of environment variable validation"""
    is_valid: bool
    missing_variables: List[str] = field(default_factory=list)
    invalid_variables: List[Tuple[str, str]] = field(default_factory=list)  # (name, error)
    warnings: List[str] = field(default_factory=list)
    error_message: Optional[str] = None


DISPATCHER_VARIABLES = [
    # Broker
    EnvironmentVariable(
        name="RABBITMQ_URL",
        description="RabbitMQ connection URL (host, credentials, virtual host)",
        variable_type=VariableType.URL,
        validation_pattern=r"^amqps?://.+",
        sensitive=True,
    ),
    # Document store
    EnvironmentVariable(
        name="DATABASE_URL",
        description="PostgreSQL connection URL with async driver",
        variable_type=VariableType.URL,
        validation_pattern=r"^postgresql\+asyncpg://.+",
        sensitive=True,
    ),
    # Mailgun
    EnvironmentVariable(
        name="MAILGUN_API_KEY",
        description="Mailgun API key",
        variable_type=VariableType.SECRET,
        sensitive=True,
    ),
    EnvironmentVariable(
        name="MAILGUN_DOMAIN",
        description="Mailgun sending domain",
        variable_type=VariableType.STRING,
        validation_pattern=r"^[A-Za-z0-9.-]+\.[A-Za-z]{2,}$",
    ),
    EnvironmentVariable(
        name="FROM_EMAIL",
        description="From email address for outgoing emails",
        variable_type=VariableType.EMAIL,
    ),
    EnvironmentVariable(
        name="FROM_NAME",
        description="From name for outgoing emails",
        variable_type=VariableType.STRING,
        required=False,
    ),
    EnvironmentVariable(
        name="ADMIN_EMAIL",
        description="Admin email for notifications",
        variable_type=VariableType.EMAIL,
    ),
    # Process
    EnvironmentVariable(
        name="ENVIRONMENT",
        description="Application environment",
        variable_type=VariableType.STRING,
        required=False,
        validation_pattern=r"^(local|development|staging|production)$",
    ),
    EnvironmentVariable(
        name="HEALTH_PORT",
        description="Port of the liveness endpoint",
        variable_type=VariableType.INTEGER,
        required=False,
    ),
    EnvironmentVariable(
        name="PORT",
        description="Platform-assigned port, used when HEALTH_PORT is unset",
        variable_type=VariableType.INTEGER,
        required=False,
    ),
    EnvironmentVariable(
        name="DISPATCH_MAX_RETRIES",
        description="Redeliveries before a failing event is dead-lettered, or 'unlimited'",
        variable_type=VariableType.STRING,
        required=False,
        validation_pattern=r"^(\d+|unlimited|none|infinite)$",
    ),
    EnvironmentVariable(
        name="DISPATCH_HANDLER_TIMEOUT",
        description="Seconds a handler may run before it is cancelled (0 disables)",
        variable_type=VariableType.FLOAT,
        required=False,
    ),
    EnvironmentVariable(
        name="DISPATCH_CONNECT_ATTEMPTS",
        description="Broker connect attempts before giving up",
        variable_type=VariableType.INTEGER,
        required=False,
    ),
    EnvironmentVariable(
        name="DISPATCH_CONNECT_RETRY_DELAY",
        description="Seconds before the first connect retry, doubled per attempt",
        variable_type=VariableType.FLOAT,
        required=False,
    ),
    EnvironmentVariable(
        name="DISPATCH_RESTART_DELAY",
        description="Seconds between stopping and restarting consumers",
        variable_type=VariableType.FLOAT,
        required=False,
    ),
    EnvironmentVariable(
        name="DISPATCH_HEARTBEAT_INTERVAL",
        description="Seconds between status heartbeat log lines",
        variable_type=VariableType.FLOAT,
        required=False,
    ),
    EnvironmentVariable(
        name="BROKER_PREFETCH_COUNT",
        description="Unacknowledged deliveries per subscription",
        variable_type=VariableType.INTEGER,
        required=False,
    ),
    EnvironmentVariable(
        name="BROKER_HEARTBEAT",
        description="AMQP heartbeat interval in seconds",
        variable_type=VariableType.INTEGER,
        required=False,
    ),
    EnvironmentVariable(
        name="BROKER_DEAD_LETTER_ENABLED",
        description="Declare dead-letter exchange and queues",
        variable_type=VariableType.BOOLEAN,
        required=False,
    ),
]


def mask_value(value: str) -> str:
    """Show only the edges of a secret: 'key-abcdef123' -> 'key-***123'"""
    if not value:
        return ""
    # Credentials embedded in URLs are hidden entirely
    if "://" in value:
        return re.sub(r"//[^/@]*@", "//***:***@", value)
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}***{value[-3:]}"


def _validate_variable_value(var_def: EnvironmentVariable, value: str) -> Optional[str]:
    """
    Validate a single environment variable value.

    Returns:
        Error message if invalid, None if valid
    """
    shown = mask_value(value) if var_def.sensitive else value

    if var_def.variable_type == VariableType.INTEGER:
        try:
            port = int(value)
        except ValueError:
            return f"Must be a valid integer, got: {shown}"
        if var_def.name.endswith("PORT") and not 0 < port <= 65535:
            return f"Must be a port between 1 and 65535, got: {shown}"

    elif var_def.variable_type == VariableType.FLOAT:
        try:
            if float(value) < 0:
                return f"Must not be negative, got: {shown}"
        except ValueError:
            return f"Must be a valid number, got: {shown}"

    elif var_def.variable_type == VariableType.BOOLEAN:
        if value.lower() not in ["true", "false", "1", "0", "yes", "no", "on", "off"]:
            return f"Must be a boolean value (true/false), got: {shown}"

    elif var_def.variable_type == VariableType.EMAIL:
        if "@" not in value or "." not in value.split("@")[-1] or len(value) <= 5:
            return f"Must be a valid email address, got: {shown}"

    if var_def.validation_pattern:
        if not re.match(var_def.validation_pattern, value, re.IGNORECASE):
            return f"Does not match required pattern: {var_def.validation_pattern}"

    if var_def.sensitive and var_def.variable_type == VariableType.SECRET and len(value) < 8:
        return "Sensitive variables must be at least 8 characters long"

    return None


class EnvironmentValidator:
    """Validates dispatcher variables against ``os.environ``"""

    def __init__(self, variables: Optional[List[EnvironmentVariable]] = None, environ: Optional[Dict[str, str]] = None):
        self.variables = list(DISPATCHER_VARIABLES if variables is None else variables)
        self._environ = environ

    @property
    def environ(self) -> Dict[str, str]:
        return os.environ if self._environ is None else self._environ

    def validate_startup_environment(self) -> ValidationResult:
        """
        Check every variable; required ones must be present and non-empty,
        present ones must pass their type and pattern checks.
        """
        missing_variables = []
        invalid_variables = []
        warnings = []

        for rule in self.variables:
            value = (self.environ.get(rule.name) or "").strip()

            if not value:
                if rule.required:
                    missing_variables.append(rule.name)
                continue

            error = _validate_variable_value(rule, value)
            if error:
                invalid_variables.append((rule.name, error))

        if self.environ.get("ENVIRONMENT", "local") == "production":
            rabbitmq_url = self.environ.get("RABBITMQ_URL", "")
            if "localhost" in rabbitmq_url or "127.0.0.1" in rabbitmq_url:
                warnings.append("RABBITMQ_URL points at localhost in production")

        error_message = None
        if missing_variables or invalid_variables:
            error_parts = []

            if missing_variables:
                error_parts.append(
                    "Missing required environment variables:\n" +
                    "\n".join(f"  - {var}" for var in missing_variables)
                )

            if invalid_variables:
                error_parts.append(
                    "Invalid environment variables:\n" +
                    "\n".join(f"  - {var}: {error}" for var, error in invalid_variables)
                )

            error_message = "\n\n".join(error_parts)

        return ValidationResult(
            is_valid=not missing_variables and not invalid_variables,
            missing_variables=missing_variables,
            invalid_variables=invalid_variables,
            warnings=warnings,
            error_message=error_message,
        )

    def summary(self) -> Dict[str, str]:
        """Present variables with sensitive values masked, for startup logs."""
        report = {}
        for rule in self.variables:
            value = self.environ.get(rule.name)
            if value:
                report[rule.name] = mask_value(value) if rule.sensitive else value
        return report


def validate_startup_environment() -> ValidationResult:
    """Validate the current process environment"""
    result = EnvironmentValidator().validate_startup_environment()
    if result.is_valid:
        logger.info("Environment validation passed")
    else:
        logger.error(f"Environment validation failed:\n{result.error_message}")
    for warning in result.warnings:
        logger.warning(warning)
    return result
