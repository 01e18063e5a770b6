"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

SUPPORTED_PROVIDERS = ("bedrock", "openai", "gemini")


def _require(name: str) -> str:
    val = os.getenv(name)
    if not val:
        raise RuntimeError(f"Required environment variable {name} is not set")
    return val


def _optional_float(name: str) -> float | None:
    val = os.getenv(name)
    if not val:
        return None
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {val!r}") from None


# Paths
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "./data"))

# Provider selection
AI_PROVIDER: str = os.getenv("AI_PROVIDER", "bedrock").lower()
AI_MODEL: str = os.getenv("AI_MODEL", "")

# Credentials / endpoints
AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

# Agent
MAX_TURNS: int = int(os.getenv("MAX_TURNS", "50"))
MAX_OUTPUT_TOKENS: int = int(os.getenv("MAX_OUTPUT_TOKENS", "8192"))

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Derived paths
SQLITE_PATH: Path = DATA_DIR / "drawagent.db"


@dataclass(frozen=True)
class ProviderSettings:
    """Which backend to talk to and how to reach it."""

    provider: str
    model_id: str
    api_key: str = ""
    base_url: str = ""
    region: str = "us-east-1"
    max_tokens: int = 8192

    def validate(self) -> None:
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported AI_PROVIDER {self.provider!r} "
                f"(expected one of: {', '.join(SUPPORTED_PROVIDERS)})"
            )
        if not self.model_id:
            raise ValueError("A model id is required")
        if self.provider in ("openai", "gemini") and not self.api_key:
            raise ValueError(f"An API key is required for provider {self.provider!r}")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be positive")


@dataclass(frozen=True)
class AgentConfig:
    """Per-task configuration handed to the agent loop and provider factory.

    Built once per task (usually via ``from_env``) and passed explicitly;
    nothing below reads the environment on its own.
    """

    provider: ProviderSettings
    max_turns: int = 50
    context_check_after_turn: int = 2
    auto_condense_threshold: float | None = None
    tool_result_preview_chars: int = 200
    max_tool_workers: int = 8
    cwd: str = field(default_factory=os.getcwd)

    @classmethod
    def from_env(cls) -> AgentConfig:
        provider = os.getenv("AI_PROVIDER", "bedrock").lower()
        if provider == "openai":
            api_key = os.getenv("OPENAI_API_KEY", "")
            base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
        elif provider == "gemini":
            api_key = os.getenv("GEMINI_API_KEY", "")
            base_url = ""
        else:
            api_key = ""
            base_url = ""
        settings = ProviderSettings(
            provider=provider,
            model_id=_require("AI_MODEL"),
            api_key=api_key,
            base_url=base_url,
            region=os.getenv("AWS_REGION", "us-east-1"),
            max_tokens=int(os.getenv("MAX_OUTPUT_TOKENS", "8192")),
        )
        cfg = cls(
            provider=settings,
            max_turns=int(os.getenv("MAX_TURNS", "50")),
            auto_condense_threshold=_optional_float("AUTO_CONDENSE_THRESHOLD"),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        self.provider.validate()
        if self.max_turns <= 0:
            raise ValueError("max_turns must be positive")
        if self.auto_condense_threshold is not None and not (
            0 < self.auto_condense_threshold <= 1
        ):
            raise ValueError("AUTO_CONDENSE_THRESHOLD must be in (0, 1]")
        if self.max_tool_workers <= 0:
            raise ValueError("max_tool_workers must be positive")
