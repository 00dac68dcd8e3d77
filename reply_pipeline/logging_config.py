import datetime
import logging
import shutil
from pathlib import Path
from typing import Callable, TextIO
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

LOGGER_NAME = "reply_pipeline"

_LOGGING_CONFIGURED = False

# Call-site path fragment -> business bucket; first match wins.
_BUSINESS_BY_PATH: tuple[tuple[str, str], ...] = (
    ("/reply_pipeline/routing/", "routing"),
    ("/reply_pipeline/services/session_lock.py", "locking"),
    ("/reply_pipeline/services/session_backlog.py", "locking"),
    ("/reply_pipeline/services/circuit_breaker.py", "breaker"),
    ("/reply_pipeline/services/completion_client.py", "breaker"),
    ("/reply_pipeline/pipeline/retry_handler.py", "dead_letter"),
    ("/reply_pipeline/services/dead_letter_service.py", "dead_letter"),
    ("/reply_pipeline/pipeline/", "worker"),
    ("/reply_pipeline/queues/", "worker"),
    ("/reply_pipeline/tasks/", "tasks"),
    ("/reply_pipeline/celery_app.py", "tasks"),
    ("/reply_pipeline/api/", "api"),
)


def _resolve_tzinfo(timezone_name: str | None) -> datetime.tzinfo:
    if timezone_name:
        try:
            return ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError:
            pass
    # Fallback to system local timezone
    return datetime.datetime.now().astimezone().tzinfo or datetime.UTC


class LocalTimezoneFormatter(logging.Formatter):
    """
    Formatter that renders timestamps in LOG_TIMEZONE (system local time when
    unset or invalid).
    """

    def __init__(self, *args, timezone_name: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._tzinfo = _resolve_tzinfo(timezone_name)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.datetime.fromtimestamp(record.created, tz=self._tzinfo)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")


def infer_log_business(record: logging.LogRecord) -> str:
    """
    Map a record to a business bucket using its call site.

    Every module logs through the shared "reply_pipeline" logger, so the
    logger name alone cannot tell routing logs from worker logs.
    """
    name = record.name or ""
    if name.startswith("celery"):
        return "tasks"
    if name.startswith("uvicorn"):
        return "api"

    path = (record.pathname or "").replace("\\", "/")
    for fragment, business in _BUSINESS_BY_PATH:
        if fragment in path:
            return business
    return "app"


class _DailyFolderHandler(logging.Handler):
    """
    Base for handlers writing into <log_dir>/<YYYY-MM-DD>/ and pruning day
    folders beyond backup_days.
    """

    def __init__(
        self,
        log_dir: Path,
        backup_days: int = 7,
        encoding: str = "utf-8",
        timezone_name: str | None = None,
        now_fn: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        super().__init__()
        self.log_dir = log_dir
        self.backup_days = backup_days
        self.encoding = encoding
        self.terminator = "\n"
        self._tzinfo = _resolve_tzinfo(timezone_name)
        # now_fn is mainly for tests.
        self._now_fn = now_fn
        self._current_date: datetime.date | None = None
        self._streams: dict[str, TextIO] = {}

    def _today(self) -> datetime.date:
        now = self._now_fn() if self._now_fn is not None else datetime.datetime.now(tz=self._tzinfo)
        if now.tzinfo is None:
            now = now.replace(tzinfo=self._tzinfo)
        return now.date()

    def _cleanup_old_dirs(self) -> None:
        if self.backup_days <= 0:
            return
        try:
            dirs = [p for p in self.log_dir.iterdir() if p.is_dir()]
        except OSError:
            return

        dated: list[tuple[datetime.date, Path]] = []
        for p in dirs:
            try:
                dated.append((datetime.date.fromisoformat(p.name), p))
            except ValueError:
                continue

        dated.sort(key=lambda x: x[0])
        for _, old_dir in dated[: max(0, len(dated) - self.backup_days)]:
            try:
                shutil.rmtree(old_dir)
            except OSError:
                pass

    def _close_all_streams(self) -> None:
        for stream in self._streams.values():
            try:
                stream.close()
            except OSError:
                pass
        self._streams.clear()

    def _roll_date(self) -> datetime.date:
        today = self._today()
        if self._current_date != today:
            self._current_date = today
            self._close_all_streams()
            (self.log_dir / today.isoformat()).mkdir(parents=True, exist_ok=True)
            self._cleanup_old_dirs()
        return today

    def _stream_for(self, filename: str) -> TextIO:
        stream = self._streams.get(filename)
        if stream is None:
            day = self._roll_date()
            file_path = self.log_dir / day.isoformat() / filename
            file_path.parent.mkdir(parents=True, exist_ok=True)
            stream = open(file_path, "a", encoding=self.encoding)
            self._streams[filename] = stream
        return stream

    def _filename_for(self, record: logging.LogRecord) -> str:
        raise NotImplementedError

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._roll_date()
            stream = self._stream_for(self._filename_for(record))
            stream.write(self.format(record) + self.terminator)
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        try:
            self._close_all_streams()
        finally:
            super().close()


class DailyFolderFileHandler(_DailyFolderHandler):
    """Writes every record to <log_dir>/<YYYY-MM-DD>/<filename>."""

    def __init__(self, log_dir: Path, filename: str, **kwargs) -> None:
        super().__init__(log_dir, **kwargs)
        self.filename = filename

    def _filename_for(self, record: logging.LogRecord) -> str:
        return self.filename


class DailyFolderBusinessFileHandler(_DailyFolderHandler):
    """
    Route logs into per-day folders and per-business files:
    <log_dir>/<YYYY-MM-DD>/<business>.log
    """

    def _filename_for(self, record: logging.LogRecord) -> str:
        biz = getattr(record, "biz", None) or infer_log_business(record)
        setattr(record, "biz", biz)
        safe = "".join(c if (c.isalnum() or c in ("-", "_")) else "_" for c in biz)
        return f"{safe}.log"


class EnsureBizFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not hasattr(record, "biz"):
            setattr(record, "biz", infer_log_business(record))
        return True


def _project_root() -> Path:
    # reply_pipeline/logging_config.py -> reply_pipeline -> repo root
    return Path(__file__).resolve().parents[1]


def _resolve_log_dir(value: str | Path) -> Path:
    p = value if isinstance(value, Path) else Path(value)
    if p.is_absolute():
        return p
    return _project_root() / p


def setup_logging() -> None:
    """
    Configure application logging.

    Application logs land in <LOG_DIR>/<YYYY-MM-DD>/<business>.log (or a
    single app.log per day when LOG_SPLIT_BY_BUSINESS is off); everything is
    also echoed to the console through the root logger.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    log_dir = _resolve_log_dir(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    level_value = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    formatter = LocalTimezoneFormatter(
        "%(asctime)s [%(levelname)s] [%(biz)s] %(name)s - %(message)s",
        timezone_name=settings.log_timezone,
    )

    handler_kwargs = {
        "backup_days": settings.log_backup_days,
        "timezone_name": settings.log_timezone,
    }
    if settings.log_split_by_business:
        file_handler: logging.Handler = DailyFolderBusinessFileHandler(log_dir, **handler_kwargs)
    else:
        file_handler = DailyFolderFileHandler(log_dir, "app.log", **handler_kwargs)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(EnsureBizFilter())

    app_logger = logging.getLogger(LOGGER_NAME)
    app_logger.setLevel(level_value)
    app_logger.propagate = True  # console output comes from the root handler
    app_logger.addHandler(file_handler)

    # Celery's own worker/beat logs go to a separate file.
    celery_file_handler = DailyFolderFileHandler(log_dir, "celery.log", **handler_kwargs)
    celery_file_handler.setFormatter(formatter)
    celery_file_handler.addFilter(EnsureBizFilter())
    celery_logger = logging.getLogger("celery")
    celery_logger.setLevel(level_value)
    celery_logger.addHandler(celery_file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(level_value)
    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root_logger.handlers
    )
    if not has_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.addFilter(EnsureBizFilter())
        root_logger.addHandler(console_handler)

    _LOGGING_CONFIGURED = True


logger = logging.getLogger(LOGGER_NAME)
