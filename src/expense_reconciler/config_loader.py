import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml
from dotenv import load_dotenv


DEFAULTS = {
    "thresholds": {"auto": 85, "suggest_min": 60},
    "weights": {"amount": 50, "name": 25, "date": 15, "description": 10},
    "tolerances": {"amount_epsilon": "0.01", "date_window_days": 90},
    "similarity": {"name_min": 70, "description_prefix": 20, "keyword_min_length": 3},
    "eligible_statuses": ["approved"],
    "ai": {
        "model": "claude-3-5-sonnet-20241022",
        "max_tokens": 1024,
        "temperature": 0.3,
        "timeout_seconds": 60,
        "min_confidence": 50,
        "request_delay_seconds": 0.5,
        "default_limit": 20,
    },
    "intake": {"status": "submitted"},
}


@dataclass(frozen=True)
class AIProviderConfig:
    api_key: Optional[str]
    model: str = DEFAULTS["ai"]["model"]
    max_tokens: int = DEFAULTS["ai"]["max_tokens"]
    temperature: float = DEFAULTS["ai"]["temperature"]
    timeout_seconds: float = DEFAULTS["ai"]["timeout_seconds"]
    min_confidence: int = DEFAULTS["ai"]["min_confidence"]
    request_delay_seconds: float = DEFAULTS["ai"]["request_delay_seconds"]

    @property
    def is_available(self) -> bool:
        return bool(self.api_key and self.api_key.strip())


def _default_config_path() -> str:
    root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return os.path.join(root, "config", "matching.yml")


def load_matching_config(path: Optional[str] = None) -> dict:
    path = path or os.getenv("RECON_CONFIG", _default_config_path())
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {k: (dict(v) if isinstance(v, dict) else v) for k, v in DEFAULTS.items()}

    # shallow merge defaults
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in DEFAULTS.items()}
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def load_provider_config(cfg: Optional[dict] = None) -> AIProviderConfig:
    """Build the AI provider settings from the matching config and the environment."""
    load_dotenv()
    ai = dict(DEFAULTS["ai"])
    ai.update((cfg or {}).get("ai", {}))
    return AIProviderConfig(
        api_key=os.getenv("ANTHROPIC_API_KEY"),
        model=os.getenv("RECON_AI_MODEL", ai["model"]),
        max_tokens=int(ai["max_tokens"]),
        temperature=float(ai["temperature"]),
        timeout_seconds=float(ai["timeout_seconds"]),
        min_confidence=int(ai["min_confidence"]),
        request_delay_seconds=float(ai["request_delay_seconds"]),
    )


def configure_logging(level: Optional[str] = None):
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
