"""Relay settings.

Settings come from three layers, later ones winning:
1. Defaults declared on the pydantic models below
2. The YAML file named by SMS_RELAY_CONFIG (default: config/sms_relay.yaml)
3. Environment variables for secrets and the most common knobs
"""

import os
from pathlib import Path
from typing import Dict, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from sms_relay.utils.config_loader import ConfigLoader

DEFAULT_CONFIG_PATH = Path("config/sms_relay.yaml")

# (section, field) -> environment variable
ENV_OVERRIDES: Dict[Tuple[str, str], str] = {
    ("openai", "api_key"): "OPENAI_API_KEY",
    ("openai", "endpoint"): "OPENAI_ENDPOINT",
    ("openai", "model_name"): "OPENAI_MODEL_NAME",
    ("twilio", "account_sid"): "TWILIO_ACCOUNT_SID",
    ("twilio", "auth_token"): "TWILIO_AUTH_TOKEN",
    ("session", "backend"): "SMS_RELAY_SESSION_BACKEND",
    ("session", "sqlite_path"): "SMS_RELAY_SESSIONS_DB_PATH",
    ("logging", "level"): "SMS_RELAY_LOG_LEVEL",
    ("logging", "log_dir"): "SMS_RELAY_LOG_DIR",
}


class OpenAISettings(BaseModel):
    """Chat completion provider settings.

    Attributes:
        api_key: Provider API key
        endpoint: Azure OpenAI resource endpoint; plain OpenAI is used when unset
        api_version: Azure OpenAI API version
        model_name: Model (or Azure deployment) name
        timeout_seconds: Per-request timeout for the completion call
    """

    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    api_version: str = "2024-06-01"
    model_name: str = "gpt-3.5-turbo"
    timeout_seconds: float = Field(8.0, gt=0)


class TwilioSettings(BaseModel):
    """Messaging provider settings.

    Attributes:
        account_sid: Twilio account SID
        auth_token: Twilio auth token (also the webhook signing key)
        validate_requests: Reject webhook calls without a valid X-Twilio-Signature
        trust_forwarded_headers: Rebuild the signed URL from X-Forwarded-* headers
    """

    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    validate_requests: bool = True
    trust_forwarded_headers: bool = True


class SmsSettings(BaseModel):
    # 320 is the recommended length for deliverability; Twilio accepts up to 1600.
    max_message_length: int = Field(320, ge=1, le=1600)
    send_delay_seconds: float = Field(1.0, ge=0)


class SessionSettings(BaseModel):
    """Session store and cookie settings.

    Attributes:
        backend: "memory" (default) or "sqlite"
        sqlite_path: Database file for the sqlite backend
        idle_timeout_minutes: Sessions untouched for this long are discarded
        cookie_name: Name of the session cookie
        cookie_secure: Mark the cookie Secure (disable only for local http)
    """

    backend: Literal["memory", "sqlite"] = "memory"
    sqlite_path: Path = Path("data/sessions.db")
    idle_timeout_minutes: int = Field(20, ge=1)
    cookie_name: str = ".SmsRelay.Session"
    cookie_secure: bool = True


class LoggingSettings(BaseModel):
    level: str = "INFO"
    log_dir: str = "logs"


class RelaySettings(BaseModel):
    """Top-level settings for the relay."""

    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    twilio: TwilioSettings = Field(default_factory=TwilioSettings)
    sms: SmsSettings = Field(default_factory=SmsSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(
    path: Optional[str | Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> RelaySettings:
    """Build RelaySettings from the YAML file and the environment.

    Args:
        path: Config file path. Defaults to SMS_RELAY_CONFIG or
            config/sms_relay.yaml. An explicitly passed path must exist.
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated RelaySettings

    Raises:
        FileNotFoundError: If an explicit path does not exist
        pydantic.ValidationError: If values are out of range
    """
    environ = os.environ if environ is None else environ

    if path is not None:
        loader = ConfigLoader(path, required=True)
    elif environ.get("SMS_RELAY_CONFIG"):
        loader = ConfigLoader(environ["SMS_RELAY_CONFIG"], required=True)
    else:
        loader = ConfigLoader(DEFAULT_CONFIG_PATH, required=False)

    data = {name: loader.section(name) for name in RelaySettings.model_fields}
    for (section, field), env_var in ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value:
            data[section][field] = value

    return RelaySettings.model_validate(data)
