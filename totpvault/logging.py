import structlog, sys, pathlib, os

_LOG_STREAM = None
_SECRET_KEYS = ("secret", "passphrase", "password", "key")


def log_path() -> pathlib.Path:
    return pathlib.Path(
        os.environ.get("TOTPVAULT_LOG", pathlib.Path.home() / ".local" / "state" / "totpvault" / "totpvault.log")
    )


def _log_handle():
    """Open (or reuse) the 0600 append-only log file under ~/.local/state/totpvault."""
    global _LOG_STREAM
    if _LOG_STREAM is None:
        default_path = log_path()
        default_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(default_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        os.chmod(default_path, 0o600)
        _LOG_STREAM = os.fdopen(fd, "a", buffering=1)
    return _LOG_STREAM


def _filter_secrets(_, __, event_dict):
    for name in _SECRET_KEYS:
        event_dict.pop(name, None)
    return event_dict


def _human_renderer(_, __, event_dict):
    """Render structlog event dictionaries into human-readable timestamped lines."""
    ts = event_dict.pop("timestamp", "")
    level = event_dict.pop("level", "").upper()
    event = event_dict.pop("event", "")
    extras = " ".join(f"{k}={event_dict[k]}" for k in sorted(event_dict))
    return f"{ts} [{level}] {event} {extras}".strip()


def get_logger(debug: bool = False):
    """Configure structlog and return a logger; stderr in debug, otherwise the log file."""
    processors = [
        _filter_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.dict_tracebacks,
        _human_renderer,
    ]

    if debug:
        target = sys.stderr
        min_level = 10  # debug
    else:
        target = _log_handle()
        min_level = 20  # info

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(file=target),
        cache_logger_on_first_use=False,
    )
    return structlog.get_logger()
