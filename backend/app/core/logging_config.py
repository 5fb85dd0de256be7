import logging
import os
import random
import re
import sys
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import structlog

# ============================================================
# Public knobs other modules may import
# ============================================================
SLOW_MS_UPSTREAM = int(os.getenv("UPSTREAM_SLOW_MS", "3000"))  # ms

# High-frequency events thinned out in the perf profile unless LOG_SAMPLE_EVENTS says otherwise.
DEFAULT_SAMPLED_EVENTS: Dict[str, float] = {
    "poller.attempt": 0.2,
    "generation.insufficient": 0.2,
    "redis.poll_status.update.ok": 0.1,
    "redis.lease.acquire": 0.5,
}

# Events that always pass the perf whitelist.
DEFAULT_ALLOWED_EVENTS = (
    "logging_configured",
    "certified.call.done", "certified.call.slow", "certified.call.error",
    "resolve.ready", "resolve.generating", "resolve.session.created",
    "poller.started", "poller.finished", "poller.timeout",
    "questions.insert.ok", "questions.insert.duplicate",
    "answers.complete",
    "submission.done",
)

_LOCAL_ENVS = {"local", "dev", "development", "test"}


# ============================================================
# Env helpers
# ============================================================
def _csv_env(name: str, default: Iterable[str] = ()) -> List[str]:
    raw = os.getenv(name, "")
    if not raw:
        return list(default)
    return [x.strip() for x in raw.split(",") if x.strip()]


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "t", "yes", "y", "on"}


def _level_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").upper()
    if not raw:
        return default
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _parse_sample_map(raw: str) -> Dict[str, float]:
    """
    Parse "eventA=0.2,eventB=1.0" -> {"eventA":0.2,"eventB":1.0}
    """
    if not raw:
        return {}
    out: Dict[str, float] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part or "=" not in part:
            continue
        k, v = part.split("=", 1)
        try:
            out[k.strip()] = float(v.strip())
        except ValueError:
            continue
    return out


# ============================================================
# Profile (everything configure_logging reads from the env)
# ============================================================
@dataclass
class LogProfile:
    environment: str
    name: str
    root_level: int
    app_level: int
    libs_level: int
    allow_loggers: Set[str] = field(default_factory=set)
    allow_events: Set[str] = field(default_factory=set)
    allow_prefixes: Tuple[str, ...] = ()
    sample_default: float = 1.0
    sample_map: Dict[str, float] = field(default_factory=dict)
    log_to_file: bool = False
    log_dir: str = "/logs"

    @property
    def perf(self) -> bool:
        return self.name == "perf"


def read_profile() -> LogProfile:
    """
    LOG_PROFILE=perf  : whitelist + sampling, stacks only on errors (default outside local/dev)
    LOG_PROFILE=trace : everything, with callsite and full stacks (default in local/dev/test)
    """
    environment = (os.getenv("APP_ENVIRONMENT") or "local").lower()
    name = (os.getenv("LOG_PROFILE") or ("trace" if environment in _LOCAL_ENVS else "perf")).lower()
    perf = name == "perf"

    sample_map = dict(DEFAULT_SAMPLED_EVENTS) if perf else {}
    sample_map.update(_parse_sample_map(os.getenv("LOG_SAMPLE_EVENTS", "")))

    return LogProfile(
        environment=environment,
        name=name,
        root_level=_level_env("LOG_LEVEL_ROOT", logging.INFO if perf else logging.DEBUG),
        app_level=_level_env("LOG_LEVEL_APP", logging.INFO if perf else logging.DEBUG),
        libs_level=_level_env("LOG_LEVEL_LIBS", logging.WARNING if perf else logging.INFO),
        allow_loggers=set(_csv_env("LOG_ALLOWED_LOGGERS", default=["logging_config"])),
        allow_events=set(_csv_env("LOG_ALLOWED_EVENTS", default=DEFAULT_ALLOWED_EVENTS)),
        allow_prefixes=tuple(_csv_env("LOG_ALLOWED_LOGGER_PREFIXES")),
        sample_default=float(os.getenv("LOG_SAMPLE_DEFAULT", "1.0")),
        sample_map=sample_map,
        log_to_file=_bool_env("LOG_TO_FILE", environment in {"local", "dev", "development"}),
        log_dir=os.getenv("LOG_DIR", "/logs"),
    )


# ============================================================
# Processors
# ============================================================
def _format_exc_on_error(logger, method_name, event_dict):
    """Attach formatted exception info only for error/critical logs."""
    lvl = (event_dict.get("level") or "").lower()
    if lvl in {"error", "critical"} or event_dict.get("exc_info"):
        return structlog.processors.format_exc_info(logger, method_name, event_dict)
    return event_dict


def _always_passes(event_dict: Dict[str, Any]) -> bool:
    lvl = (event_dict.get("level") or "").lower()
    return lvl in {"warning", "error", "critical"} or bool(event_dict.get("exc_info"))


def _whitelist_processor(allow_loggers: Set[str], allow_events: Set[str], allow_prefixes: Iterable[str]):
    """Perf profile: keep allowed loggers/events/prefixes, plus WARNING and above from anywhere."""
    prefixes = tuple(allow_prefixes)

    def _proc(logger, method_name, event_dict):
        if _always_passes(event_dict):
            return event_dict
        name = event_dict.get("logger") or ""
        if name in allow_loggers or (event_dict.get("event") or "") in allow_events:
            return event_dict
        if prefixes and name.startswith(prefixes):
            return event_dict
        raise structlog.DropEvent

    return _proc


def _sampling_processor(sample_default: float, sample_map: Dict[str, float], rnd: Optional[random.Random] = None):
    """Drop a share of INFO/DEBUG events by name; warnings and errors always pass."""
    rnd = rnd or random.Random()

    def _proc(logger, method_name, event_dict):
        if _always_passes(event_dict):
            return event_dict
        p = sample_map.get((event_dict.get("event") or "").strip(), sample_default)
        if p >= 1.0:
            return event_dict
        if p > 0.0 and rnd.random() <= p:
            return event_dict
        raise structlog.DropEvent

    return _proc


# ============================================================
# Redaction
# ============================================================
SECRET_KEYS = {"authorization", "token", "certified_token", "password", "secret", "api_key"}
PII_KEYS = {"phone", "phone_number", "email"}

_BEARER_RE = re.compile(r"(bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_PASSWORD_RE = re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"',\s}]+", re.IGNORECASE)


def mask_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value or "")
    return f"***{digits[-4:]}" if len(digits) > 4 else "***"


def mask_email(value: str) -> str:
    local, sep, domain = (value or "").partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_event(logger, method_name, event_dict):
    """Mask secrets and caller identity in structured fields before rendering."""
    for key in list(event_dict):
        k = key.lower()
        value = event_dict[key]
        if value is None:
            continue
        if k in SECRET_KEYS:
            event_dict[key] = "***"
        elif k in {"phone", "phone_number"}:
            event_dict[key] = mask_phone(str(value))
        elif k == "email":
            event_dict[key] = mask_email(str(value))
    return event_dict


class RedactFilter(logging.Filter):
    """Scrub bearer tokens and passwords from plain stdlib messages (httpx, uvicorn, ...)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            msg = _BEARER_RE.sub(r"\1***", record.msg)
            record.msg = _PASSWORD_RE.sub(r"\1***", msg)
        return True


# ============================================================
# OTEL bootstrap (optional; no-op if not configured)
# ============================================================
def _configure_azure_otel_if_available(logger) -> bool:
    """
    If AZURE_MONITOR_CONNECTION_STRING is set, initialize Azure Monitor OTel.
    Returns True when configured; False if not enabled or if initialization fails.
    """
    conn = os.getenv("AZURE_MONITOR_CONNECTION_STRING")
    if not conn:
        return False
    try:
        from azure.monitor.opentelemetry import configure_azure_monitor
    except ImportError as e:
        logger.warning("otel_sdk_missing", error=str(e))
        return False
    try:
        configure_azure_monitor()
    except Exception as e:
        logger.warning("otel_config_failed", error=str(e), exc_info=True)
        return False
    logger.info("otel_configured", exporter="azure_monitor", enabled=True)
    return True


# ============================================================
# Wiring
# ============================================================
def _base_chain() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_event,
    ]


def _callsite() -> Any:
    return structlog.processors.CallsiteParameterAdder({
        structlog.processors.CallsiteParameter.PATHNAME,
        structlog.processors.CallsiteParameter.FUNC_NAME,
        structlog.processors.CallsiteParameter.LINENO,
    })


def _formatter(profile: LogProfile) -> structlog.stdlib.ProcessorFormatter:
    pre_chain = _base_chain()
    if not profile.perf:
        pre_chain.append(_callsite())
        render = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        render = [_format_exc_on_error, structlog.processors.JSONRenderer()]
    return structlog.stdlib.ProcessorFormatter(foreign_pre_chain=pre_chain, processors=render)


def _install_handlers(profile: LogProfile, formatter: logging.Formatter) -> Tuple[Optional[str], Optional[str]]:
    """Console always; rotating file when enabled. Returns (log_file_path, file_error)."""
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file_path: Optional[str] = None
    file_error: Optional[str] = None
    if profile.log_to_file:
        try:
            os.makedirs(profile.log_dir, exist_ok=True)
            log_file_path = os.path.join(profile.log_dir, "app.log")
            handlers.append(RotatingFileHandler(log_file_path, maxBytes=10 * 1024 * 1024, backupCount=5))
        except OSError as e:
            log_file_path, file_error = None, str(e)

    for h in handlers:
        h.setFormatter(formatter)
        h.setLevel(profile.root_level)
        h.addFilter(RedactFilter())
        root.addHandler(h)
    root.setLevel(profile.root_level)
    return log_file_path, file_error


def _structlog_processors(profile: LogProfile) -> List:
    processors = _base_chain()
    if profile.perf:
        processors.append(_whitelist_processor(profile.allow_loggers, profile.allow_events, profile.allow_prefixes))
        processors.append(_sampling_processor(profile.sample_default, profile.sample_map))
    else:
        processors.extend([
            _callsite(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ])
    processors.append(structlog.stdlib.ProcessorFormatter.wrap_for_formatter)
    return processors


def _tune_library_loggers(profile: LogProfile) -> None:
    for name in (
        "uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore",
        "sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio", "redis",
    ):
        lg = logging.getLogger(name)
        lg.setLevel(profile.libs_level)
        lg.propagate = False
    for name in ("app", "app.api", "app.services", "logging_config"):
        logging.getLogger(name).setLevel(profile.app_level)


def configure_logging() -> LogProfile:
    """
    Structured JSON logging for the API and its background pollers.

    Env knobs:
      APP_ENVIRONMENT, LOG_PROFILE, LOG_LEVEL_ROOT, LOG_LEVEL_APP, LOG_LEVEL_LIBS
      LOG_ALLOWED_LOGGERS, LOG_ALLOWED_EVENTS, LOG_ALLOWED_LOGGER_PREFIXES
      LOG_SAMPLE_DEFAULT, LOG_SAMPLE_EVENTS
      LOG_TO_FILE, LOG_DIR (file logging defaults on for local/dev)
      AZURE_MONITOR_CONNECTION_STRING (enables OTel -> App Insights)
      UPSTREAM_SLOW_MS
    """
    global SLOW_MS_UPSTREAM
    SLOW_MS_UPSTREAM = _int_env("UPSTREAM_SLOW_MS", SLOW_MS_UPSTREAM)

    profile = read_profile()
    log_file_path, file_error = _install_handlers(profile, _formatter(profile))

    structlog.configure(
        processors=_structlog_processors(profile),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
        wrapper_class=structlog.stdlib.BoundLogger,
    )
    _tune_library_loggers(profile)

    lg = structlog.get_logger("logging_config")
    if file_error:
        lg.warning("file_logging_disabled", error=file_error)
    lg.info(
        "logging_configured",
        environment=profile.environment,
        profile=profile.name,
        root_level=logging.getLevelName(profile.root_level),
        app_level=logging.getLevelName(profile.app_level),
        libs_level=logging.getLevelName(profile.libs_level),
        log_file=log_file_path,
        sampled_events=sorted(profile.sample_map),
        slow_ms_upstream=SLOW_MS_UPSTREAM,
    )

    _configure_azure_otel_if_available(lg)
    return profile
