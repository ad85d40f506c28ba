from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
import json
import os
import re

from dotenv import load_dotenv

from .frontier import DEFAULT_SCORING, ScoringTable
from .guardrails import GuardrailPolicy

CONFIG_SCHEMA_VERSION = 1


@dataclass
class ExplorerConfig:
    """
    Canonical configuration for one exploration session.
    Plain data only; the orchestrator builds its components from it.
    """
    start_url: str = ""
    goal: Optional[str] = None
    max_depth: int = 3
    max_pages: int = 50
    timeout_ms: int = 300_000
    page_load_timeout_ms: int = 30_000
    allowed_domains: List[str] = field(default_factory=list)
    generate_report: bool = True
    take_screenshots: bool = True
    memory_enabled: bool = True
    verbose: bool = False
    # where the local memory backend and reports live
    memory_dir: str = ".explorer/memory"
    report_dir: str = ".explorer/reports"
    max_stored_states: int = 1000
    include_elements: bool = True
    guardrails: GuardrailPolicy = field(default_factory=GuardrailPolicy)
    scoring: ScoringTable = field(default_factory=lambda: DEFAULT_SCORING)
    schema_version: int = CONFIG_SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["scoring"] = {
            c.name: {"weight": c.weight, "tokens": list(c.tokens)} for c in self.scoring.categories
        }
        return data

    # ---------- Validation ----------

    def validate(self) -> None:
        if not self.start_url:
            raise ValueError("start_url is required")
        if not re.match(r"^https?://", self.start_url, re.I):
            raise ValueError(f"start_url must be an http(s) URL, got {self.start_url!r}")
        if not 1 <= self.max_depth <= 10:
            raise ValueError("max_depth must be between 1 and 10")
        if not 1 <= self.max_pages <= 100:
            raise ValueError("max_pages must be between 1 and 100")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.page_load_timeout_ms <= 0:
            raise ValueError("page_load_timeout_ms must be > 0")
        self.guardrails.validate()

    # ---------- Loaders ----------

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ExplorerConfig":
        """
        Accepts snake_case or camelCase keys (startUrl, maxDepth, ...).
        Unknown keys are ignored.
        """
        data = migrate_config({_snake(k): v for k, v in raw.items()})
        if isinstance(data.get("guardrails"), dict):
            data["guardrails"] = GuardrailPolicy.from_dict({_snake(k): v for k, v in data["guardrails"].items()})
        if isinstance(data.get("scoring"), dict):
            data["scoring"] = ScoringTable.from_dict(data["scoring"])
        if isinstance(data.get("allowed_domains"), str):
            data["allowed_domains"] = _split(data["allowed_domains"])
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "ExplorerConfig":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "ExplorerConfig":
        """
        Build config from EXPLORER_* environment variables, after loading a .env file if present.
        """
        load_dotenv(dotenv_path)

        def _get(name: str, default: str) -> str:
            return os.getenv(name, default)

        policy = GuardrailPolicy(
            requests_per_second=float(_get("EXPLORER_RATE_PER_SECOND", "2.0")),
            burst_size=int(_get("EXPLORER_BURST_SIZE", "5")),
            max_pages_per_domain=int(_get("EXPLORER_MAX_PAGES_PER_DOMAIN", "50")),
        )
        return cls(
            start_url=_get("EXPLORER_START_URL", ""),
            goal=os.getenv("EXPLORER_GOAL") or None,
            max_depth=int(_get("EXPLORER_MAX_DEPTH", "3")),
            max_pages=int(_get("EXPLORER_MAX_PAGES", "50")),
            timeout_ms=int(_get("EXPLORER_TIMEOUT_MS", "300000")),
            page_load_timeout_ms=int(_get("EXPLORER_PAGE_LOAD_TIMEOUT_MS", "30000")),
            allowed_domains=_split(_get("EXPLORER_ALLOWED_DOMAINS", "")),
            generate_report=_flag(_get("EXPLORER_GENERATE_REPORT", "true")),
            take_screenshots=_flag(_get("EXPLORER_TAKE_SCREENSHOTS", "true")),
            memory_enabled=_flag(_get("EXPLORER_MEMORY_ENABLED", "true")),
            verbose=_flag(_get("EXPLORER_VERBOSE", "false")),
            memory_dir=_get("EXPLORER_MEMORY_DIR", ".explorer/memory"),
            report_dir=_get("EXPLORER_REPORT_DIR", ".explorer/reports"),
            guardrails=policy,
        )


def migrate_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bring a config dict up to the current schema version. Keep this additive.
    """
    raw.setdefault("schema_version", CONFIG_SCHEMA_VERSION)
    return raw


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _split(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")
