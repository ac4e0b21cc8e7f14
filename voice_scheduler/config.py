"""Centralized configuration for the Voice Scheduler agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/voice-scheduler/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))

SSM_PREFIX = "/voice-scheduler"


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged at DEBUG so local runs stay quiet.
    """
    try:
        import boto3  # noqa: PLC0415 (only needed on AWS)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"{SSM_PREFIX}/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str, default: str | None = None) -> str | None:
    """Return a config value from env-var or SSM, or *default*."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    return default


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store {SSM_PREFIX}/{name} (AWS)."
    )


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Post-call extraction runs on a cheaper model
EXTRACTION_MODEL_NAME: str = os.getenv("EXTRACTION_MODEL_NAME", "claude-haiku-4-5")

LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# ── Speech (OpenAI audio modality + transcription) ──────────────────
# Without a key the agent replies with transcript fragments only.
OPENAI_API_KEY: str | None = _optional_env("OPENAI_API_KEY")
SPEECH_MODEL_NAME: str = os.getenv("SPEECH_MODEL_NAME", "gpt-audio")
SPEECH_VOICE: str = os.getenv("SPEECH_VOICE", "alloy")
TRANSCRIPTION_MODEL_NAME: str = os.getenv("TRANSCRIPTION_MODEL_NAME", "whisper-1")

# ── Storage ─────────────────────────────────────────────────────────
DATABASE_URL: str = _optional_env("DATABASE_URL", "sqlite:///voice_scheduler.db")

# ── Booking ─────────────────────────────────────────────────────────
# Status given to appointments booked through the book_appointment tool.
BOOKING_STATUS: str = os.getenv("BOOKING_STATUS", "scheduled")

# ── Session cache ───────────────────────────────────────────────────
SESSION_CACHE_MAX_BYTES: int = int(os.getenv("SESSION_CACHE_MAX_BYTES", str(20 * 1024 * 1024)))
