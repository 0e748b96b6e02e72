import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _get_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_env_any(names: tuple[str, ...], default: str | None = None) -> str | None:
    for name in names:
        value = _get_env(name)
        if value is not None and value != "":
            return value
    return default


def _get_flag(name: str, default: str = "false") -> bool:
    return (_get_env(name, default) or default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    service_api_key: str
    callback_url: str
    callback_timeout_ms: int
    llm_enabled: bool
    groq_api_keys: tuple[str, ...]
    groq_base_url: str
    groq_model: str
    classifier_timeout_ms: int
    history_max_messages: int
    session_ttl_seconds: int
    circuit_failure_threshold: int
    circuit_recovery_seconds: int

    @property
    def classifier_configured(self) -> bool:
        return bool(self.llm_enabled and self.groq_api_keys and self.groq_model)


def load_settings() -> Settings:
    service_api_key = _get_env_any(("SERVICE_API_KEY", "API_KEY"))
    if not service_api_key:
        raise RuntimeError("SERVICE_API_KEY (or API_KEY) is required")

    callback_url = (_get_env_any(("CALLBACK_URL", "GUVI_CALLBACK_URL"), "") or "").strip()
    callback_timeout_ms = int(_get_env("CALLBACK_TIMEOUT_MS", "5000") or "5000")

    llm_enabled = _get_flag("LLM_ENABLED", "true")
    raw_keys = _get_env_any(("GROQ_API_KEYS", "GROQ_API_KEY"), "") or ""
    groq_api_keys = tuple(k.strip() for k in raw_keys.split(",") if k.strip())
    groq_base_url = (_get_env("GROQ_BASE_URL", "https://api.groq.com/openai/v1") or "").strip()
    groq_model = (_get_env("GROQ_MODEL", "llama-3.1-8b-instant") or "llama-3.1-8b-instant").strip()

    classifier_timeout_ms = int(_get_env("CLASSIFIER_TIMEOUT_MS", "15000") or "15000")
    history_max_messages = int(_get_env("HISTORY_MAX_MESSAGES", "30") or "30")
    # 0 keeps sessions for the lifetime of the process.
    session_ttl_seconds = int(_get_env("SESSION_TTL_SECONDS", "0") or "0")

    circuit_failure_threshold = int(_get_env("CIRCUIT_FAILURE_THRESHOLD", "4") or "4")
    circuit_recovery_seconds = int(_get_env("CIRCUIT_RECOVERY_SECONDS", "45") or "45")

    return Settings(
        service_api_key=service_api_key,
        callback_url=callback_url,
        callback_timeout_ms=max(100, min(callback_timeout_ms, 60000)),
        llm_enabled=llm_enabled,
        groq_api_keys=groq_api_keys,
        groq_base_url=groq_base_url,
        groq_model=groq_model,
        classifier_timeout_ms=max(100, min(classifier_timeout_ms, 60000)),
        history_max_messages=max(1, min(history_max_messages, 500)),
        session_ttl_seconds=max(0, session_ttl_seconds),
        circuit_failure_threshold=max(1, circuit_failure_threshold),
        circuit_recovery_seconds=max(1, min(circuit_recovery_seconds, 3600)),
    )
