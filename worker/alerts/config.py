"""
Configuration loader for the Alert Worker.

Uses Pydantic Settings for environment variable parsing, with SSM parameter
resolution in non-local environments.
"""

from __future__ import annotations

import os
from functools import lru_cache

import boto3
from pydantic import SecretStr
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Alert Worker configuration loaded from environment variables.

    In production (APP_ENV != 'local'), environment variables with an
    ``_SSM_PARAM`` suffix are resolved via AWS Systems Manager Parameter
    Store before constructing the settings object.
    """

    database_url: SecretStr
    aws_region: str = "us-east-1"

    # Text generation
    anthropic_api_key: SecretStr | None = None
    anthropic_model: str = "claude-haiku-4-5-20251001"
    generation_max_tokens: int = 150

    # Channels
    email_sender: str = "Surf Alerts <alerts@example.com>"
    onesignal_app_id: str | None = None
    onesignal_api_key: SecretStr | None = None
    dashboard_url: str = "https://example.com/dashboard"
    push_ttl_seconds: int = 7200
    push_max_length: int = 200

    # Repeat suppression
    alert_cooldown_hours: float = 6.0

    # Concurrency and timeouts
    fetch_concurrency: int = 8
    generation_concurrency: int = 4
    dispatch_concurrency: int = 8
    fetch_timeout_seconds: float = 20.0
    generation_timeout_seconds: float = 10.0
    dispatch_timeout_seconds: float = 10.0
    run_deadline_seconds: float = 600.0

    # Feature flags
    enable_surveillance_window: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def _resolve_ssm_params() -> None:
    """Scan environment variables for ``*_SSM_PARAM`` suffixes and replace
    them with the actual secret values fetched from AWS SSM Parameter Store.

    For example, if ``ANTHROPIC_API_KEY_SSM_PARAM=/surf-alerts/prod/anthropic``
    is set, this function fetches that parameter and injects
    ``ANTHROPIC_API_KEY=<resolved_value>`` into the environment.
    """
    ssm_suffix = "_SSM_PARAM"
    params_to_resolve: dict[str, str] = {}

    for key, value in os.environ.items():
        if key.endswith(ssm_suffix):
            params_to_resolve[key[: -len(ssm_suffix)]] = value

    if not params_to_resolve:
        return

    ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-east-1"))

    # SSM GetParameters accepts at most 10 names per call
    param_names = list(params_to_resolve.values())
    for i in range(0, len(param_names), 10):
        batch = param_names[i : i + 10]
        response = ssm.get_parameters(Names=batch, WithDecryption=True)
        resolved = {p["Name"]: p["Value"] for p in response["Parameters"]}

        missing = response.get("InvalidParameters") or []
        if missing:
            raise RuntimeError(f"SSM parameters not found: {', '.join(missing)}")

        for target_key, param_name in params_to_resolve.items():
            if param_name in resolved:
                os.environ[target_key] = resolved[param_name]


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and cache application settings.

    1. Check ``APP_ENV`` environment variable.
    2. If not ``local``, resolve SSM parameters into the environment.
    3. Construct and return the ``Settings`` object.
    """
    app_env = os.environ.get("APP_ENV", "local")
    if app_env != "local":
        _resolve_ssm_params()

    return Settings()  # type: ignore[call-arg]
