"""
Settings loader (Azure-first with YAML fallback).

Load order:
  1) Azure App Configuration (blob key `certquiz:appsettings` or hierarchical keys prefixed `certquiz:`)
  2) Local YAML at backend/appconfig.local.yaml (override path with APP_CONFIG_LOCAL_PATH)
  3) Hardcoded defaults in this file

No non-secret config exists outside: appconfig.local.yaml and this file.
Secrets and connection strings come from the environment (DATABASE_URL, REDIS_URL, ...).
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import json
import os
import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

log = structlog.get_logger(__name__)


# =========================
# Pydantic settings shapes
# =========================

class AppInfo(BaseModel):
    name: str = "CertQuiz"
    environment: str = "local"
    debug: bool = True

class CorsConfig(BaseModel):
    origins: List[str] = ["http://localhost:5173"]

class ProjectConfig(BaseModel):
    api_prefix: str = "/api"

class DatabaseConfig(BaseModel):
    url: Optional[str] = None
    create_schema: bool = False

class UpstreamConfig(BaseModel):
    """Endpoints and timeouts of the certified exam API."""
    create_entry_url: str = "https://certified-new.learntube.ai/new_entry_test_v2"
    generate_url: str = "https://certified-new.learntube.ai/generate"
    continue_url: str = "https://certified-new.learntube.ai/continue"
    save_user_response_url: str = "https://certified-new.learntube.ai/save_user_response"
    claim_certificate_url: str = "https://certified-new.learntube.ai/certified_user_skill/claim_available_certificate"
    create_v2_test_url: str = "https://certified-new.learntube.ai/create_v2_test"
    analysis_url: str = "https://certified-new.learntube.ai/analysis"
    timeout_s: float = 30.0
    generate_timeout_s: float = 15.0
    create_entry_timeout_s: float = 10.0
    verify_tls: bool = True

class GenerationConfig(BaseModel):
    total_questions: int = 10
    poll_timeout_s: float = 90.0
    poll_interval_s: float = 3.0
    lease_ttl_s: int = 120
    status_ttl_s: int = 3600
    token_ttl_s: int = 3600

    @field_validator("poll_interval_s")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("poll_interval_s must be > 0")
        return v

class TierSplit(BaseModel):
    easy: int = 5
    medium: int = 3
    hard: int = 2

class PreferredIds(BaseModel):
    easy: List[int] = Field(default_factory=list)
    medium: List[int] = Field(default_factory=list)
    hard: List[int] = Field(default_factory=list)

class QuizVariantConfig(BaseModel):
    """
    Per-variant extraction policy.

    `subjects` are matched case-insensitively as substrings of the requested
    subject; the first variant that matches wins, otherwise the default variant.
    """
    subjects: List[str] = Field(default_factory=list)
    split: TierSplit = TierSplit()
    preferred_ids: PreferredIds = PreferredIds()
    progress_indicator: bool = True
    code_enrichment: str = "inline"   # "inline" | "image_markdown_raw"
    expose_code_image: bool = False

    @field_validator("code_enrichment")
    @classmethod
    def _known_enrichment(cls, v: str) -> str:
        if v not in {"inline", "image_markdown_raw"}:
            raise ValueError("code_enrichment must be 'inline' or 'image_markdown_raw'")
        return v

class ScoreBand(BaseModel):
    label: str
    min_score: int
    max_score: int

class ScoringConfig(BaseModel):
    bands: List[ScoreBand] = Field(default_factory=list)
    default_label: str = "true_low"

class Settings(BaseModel):
    app: AppInfo = AppInfo()
    cors: CorsConfig = CorsConfig()
    project: ProjectConfig = ProjectConfig()
    database: DatabaseConfig = DatabaseConfig()
    upstream: UpstreamConfig = UpstreamConfig()
    generation: GenerationConfig = GenerationConfig()
    default_variant: str = "base"
    variants: Dict[str, QuizVariantConfig] = Field(default_factory=lambda: {"base": QuizVariantConfig()})
    scoring: ScoringConfig = ScoringConfig()

    @model_validator(mode="after")
    def _variants_sum_to_total(self) -> "Settings":
        total = self.generation.total_questions
        for name, v in self.variants.items():
            s = v.split
            if s.easy + s.medium + s.hard != total:
                raise ValueError(f"variant '{name}' split must add up to {total}")
        if self.default_variant not in self.variants:
            raise ValueError(f"default_variant '{self.default_variant}' is not configured")
        return self

    # -----------------------------
    # Convenience
    # -----------------------------
    @property
    def APP_ENVIRONMENT(self) -> str:
        """Mirrors self.app.environment."""
        return self.app.environment or "local"

    @property
    def REDIS_URL(self) -> str:
        """Environment-first (prod-friendly), with a safe local default."""
        return os.getenv("REDIS_URL", "redis://localhost:6379/0")

    @property
    def DATABASE_URL(self) -> Optional[str]:
        return os.getenv("DATABASE_URL") or self.database.url

    def variant_name_for(self, subject: str) -> str:
        needle = (subject or "").lower()
        for name, v in self.variants.items():
            if any(s.lower() in needle for s in v.subjects if s):
                return name
        return self.default_variant

    def variant(self, name: str) -> QuizVariantConfig:
        return self.variants.get(name) or self.variants[self.default_variant]


# ===========
# Defaults
# ===========

_DEFAULTS: Dict[str, Any] = {
    "certquiz": {
        "app": {"name": "CertQuiz", "environment": "local", "debug": True},
        "cors": {"origins": ["http://localhost:5173", "http://127.0.0.1:5173"]},
        "project": {"api_prefix": "/api"},
        "database": {"url": None, "create_schema": False},
        "upstream": {},
        "generation": {
            "total_questions": 10,
            "poll_timeout_s": 90, "poll_interval_s": 3,
            "lease_ttl_s": 120, "status_ttl_s": 3600, "token_ttl_s": 3600,
        },
        "default_variant": "base",
        "variants": {
            "base": {
                "subjects": [],
                "split": {"easy": 5, "medium": 3, "hard": 2},
                "progress_indicator": True,
                "code_enrichment": "inline",
            },
            "cybersecurity": {
                "subjects": ["cyber"],
                "split": {"easy": 4, "medium": 3, "hard": 3},
                "preferred_ids": {"easy": [1, 2, 3, 4], "medium": [11, 12, 13], "hard": [17, 18, 19]},
                "progress_indicator": False,
                "code_enrichment": "image_markdown_raw",
                "expose_code_image": True,
            },
        },
        "scoring": {
            "bands": [
                {"label": "true_high", "min_score": 70, "max_score": 100},
                {"label": "true_pass", "min_score": 50, "max_score": 60},
                {"label": "true_low", "min_score": 0, "max_score": 40},
            ],
            "default_label": "true_low",
        },
    }
}


# =============================
# Azure App Configuration load
# =============================

def _load_from_azure_app_config() -> Optional[Dict[str, Any]]:
    """
    Supports:
      - Single blob keys: "certquiz:appsettings" or "certquiz:settings"
      - Hierarchical keys beginning with "certquiz:"
    Returns nested dict (same shape as appconfig.local.yaml) or None.
    """
    endpoint = os.getenv("APP_CONFIG_ENDPOINT")
    conn_str = os.getenv("APP_CONFIG_CONNECTION_STRING")
    label = os.getenv("APP_CONFIG_LABEL", None)

    if not (endpoint or conn_str):
        log.debug("Azure App Config not configured.")
        return None

    try:
        # Lazy import to avoid hard dependency when not used
        from azure.appconfiguration import AzureAppConfigurationClient
        from azure.identity import DefaultAzureCredential
        from azure.core.exceptions import ClientAuthenticationError, ResourceNotFoundError
    except ImportError as e:
        log.warning("Azure App Config SDK not installed; skipping.", error=str(e))
        return None

    try:
        if conn_str:
            client = AzureAppConfigurationClient.from_connection_string(conn_str)
        else:
            client = AzureAppConfigurationClient(base_url=endpoint, credential=DefaultAzureCredential())

        def _get_value(key: str) -> Optional[str]:
            try:
                return client.get_configuration_setting(key=key, label=label).value
            except ResourceNotFoundError:
                return None

        # 1) Blob keys first
        for k in ("certquiz:appsettings", "certquiz:settings"):
            val = _get_value(k)
            if val:
                data = _parse_value(val)
                if isinstance(data, dict):
                    return data

        # 2) Reconstruct from hierarchical keys
        data: Dict[str, Any] = {}
        for cs in client.list_configuration_settings(key_filter="certquiz:*", label_filter=label):
            key = getattr(cs, "key", "")
            val = getattr(cs, "value", None)
            if not key or not key.startswith("certquiz:") or val is None:
                continue
            parts = key.split(":")
            cur = data
            for p in parts[:-1]:
                cur = cur.setdefault(p, {})
            cur[parts[-1]] = _parse_value(val)

        return data or None
    except ClientAuthenticationError:
        log.warning("Azure authentication failed; falling back.")
        return None


def _parse_value(val: str) -> Any:
    try:
        return json.loads(val)
    except ValueError:
        pass
    try:
        return yaml.safe_load(val)
    except yaml.YAMLError:
        return val


# ===================
# Local YAML fallback
# ===================

def _load_from_yaml() -> Optional[Dict[str, Any]]:
    backend_dir = Path(__file__).resolve().parents[2]
    default_path = backend_dir / "appconfig.local.yaml"
    path = Path(os.getenv("APP_CONFIG_LOCAL_PATH", str(default_path)))
    if not path.exists():
        log.debug("Local YAML not found", path=str(path))
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        log.warning("Failed to read local YAML; ignoring.", path=str(path), error=str(e))
        return None
    if not isinstance(data, dict):
        log.warning("Local YAML root is not a mapping; ignoring.", path=str(path))
        return None
    log.info("Loaded local YAML config", path=str(path))
    return data


# =======================
# Normalization utilities
# =======================

def _ensure_certquiz_root(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Azure hierarchical keys include 'certquiz' at root; a blob may already be rooted or not."""
    if "certquiz" in raw and isinstance(raw["certquiz"], dict):
        return raw
    keys = {"app", "cors", "project", "database", "upstream", "generation", "variants", "scoring"}
    if any(k in raw for k in keys):
        return {"certquiz": raw}
    return raw

def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    def _merge(a: Any, b: Any) -> Any:
        if isinstance(a, dict) and isinstance(b, dict):
            res = dict(a)
            for k, v in b.items():
                res[k] = _merge(res.get(k), v)
            return res
        return b if b is not None else a
    return _merge(base, override)

def _to_settings_model(root: Dict[str, Any]) -> Settings:
    """root is expected to have certquiz.* (after normalization)."""
    q = root.get("certquiz", {})
    try:
        return Settings.model_validate(q)
    except ValidationError as ve:
        raise ValueError(f"Invalid certquiz settings: {ve}") from ve


# ============
# Public API
# ============

@lru_cache
def get_settings() -> Settings:
    """
    Load settings from:
      1) Azure App Config (blob `certquiz:appsettings` / `certquiz:settings` or hierarchical `certquiz:*`)
      2) Local YAML at backend/appconfig.local.yaml (or APP_CONFIG_LOCAL_PATH)
      3) Hardcoded defaults in this file

    Any missing keys are filled from defaults to keep app stable.
    """
    azure_raw = _load_from_azure_app_config()
    if azure_raw:
        log.info("Using Azure App Configuration")
        return _to_settings_model(_deep_merge(_DEFAULTS, _ensure_certquiz_root(azure_raw)))

    yaml_raw = _load_from_yaml()
    if yaml_raw:
        log.info("Using local YAML config")
        return _to_settings_model(_deep_merge(_DEFAULTS, _ensure_certquiz_root(yaml_raw)))

    log.warning("Using hardcoded defaults (no Azure/YAML found)")
    return _to_settings_model(_DEFAULTS)

settings: Settings = get_settings()
