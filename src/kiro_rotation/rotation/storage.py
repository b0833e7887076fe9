"""Persistent storage for the account and usage documents.

Writes are serialized across processes with an advisory lock per document
and land atomically (temp file + rename), so readers never observe a torn
file. Reads are unlocked and best-effort: a missing or corrupt document is
replaced by the empty default instead of raising.
"""

import contextlib
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import orjson
from filelock import FileLock as FileLocker, Timeout as FileLockTimeout
from structlog import get_logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kiro_rotation.exceptions import LockAcquisitionError
from kiro_rotation.rotation.accounts import AccountDocument, UsageDocument
from kiro_rotation.rotation.constants import (
    LOCK_BACKOFF_FACTOR,
    LOCK_MAX_TIMEOUT_SECONDS,
    LOCK_MIN_TIMEOUT_SECONDS,
    LOCK_RETRIES,
    LOCK_SUFFIX,
)


if TYPE_CHECKING:
    from kiro_rotation.config.settings import RotationSettings


logger = get_logger(__name__)

T = TypeVar("T")

Document = AccountDocument | UsageDocument


class DocumentKind(StrEnum):
    """The two persisted documents."""

    ACCOUNTS = "accounts"
    USAGE = "usage"


class StorageIssue(StrEnum):
    """Why a load fell back to the empty default document."""

    MISSING = "missing"
    UNREADABLE = "unreadable"
    CORRUPT = "corrupt"


@dataclass
class LoadResult:
    """Outcome of a best-effort document read."""

    document: Any
    issue: StorageIssue | None = None

    @property
    def recovered(self) -> bool:
        """True if the default document was substituted for unusable content."""
        return self.issue in (StorageIssue.UNREADABLE, StorageIssue.CORRUPT)


def default_document(kind: DocumentKind) -> Document:
    """Empty document for ``kind``."""
    if kind is DocumentKind.ACCOUNTS:
        return AccountDocument()
    return UsageDocument()


def parse_document(kind: DocumentKind, data: Any) -> Document:
    """Build a typed document from decoded JSON.

    Raises:
        ValueError: If the structure is not a valid document
    """
    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid {kind} document: expected object, got {type(data).__name__}"
        )
    if kind is DocumentKind.ACCOUNTS:
        return AccountDocument.from_dict(data)
    return UsageDocument.from_dict(data)


def _write_temp(path: Path, payload: bytes) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
    return tmp_name


def atomic_write_bytes(path: Path, payload: bytes) -> None:
    """Write ``payload`` to a unique temp file beside ``path`` and rename it over.

    The temp file is removed if anything fails before the rename.
    """
    tmp_name = _write_temp(path, payload)
    try:
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def create_exclusive_bytes(path: Path, payload: bytes) -> bool:
    """Create ``path`` with ``payload`` only if it does not exist yet.

    The complete file appears in one step (hard link of a fully written temp
    file); an existing file is never replaced.

    Returns:
        True if the file was created
    """
    tmp_name = _write_temp(path, payload)
    try:
        os.link(tmp_name, path)
    except FileExistsError:
        return False
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
    return True


@dataclass(frozen=True)
class LockOptions:
    """Retry parameters for :class:`FileLock`."""

    retries: int = LOCK_RETRIES
    min_timeout: float = LOCK_MIN_TIMEOUT_SECONDS
    max_timeout: float = LOCK_MAX_TIMEOUT_SECONDS
    factor: float = LOCK_BACKOFF_FACTOR


class FileLock:
    """Advisory cross-process lock for a single file.

    Backed by an OS file lock on a ``<file>.lock`` sidecar through the
    ``filelock`` library. The operating system drops the lock when its
    holder exits, so a crashed process never leaves a document locked.
    """

    def __init__(
        self,
        path: Path,
        options: LockOptions | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + LOCK_SUFFIX)
        self.options = options or LockOptions()
        self._sleep = sleep
        self._lock = FileLocker(str(self.lock_path))

    @property
    def is_held(self) -> bool:
        """Whether this instance currently owns the lock."""
        return self._lock.is_locked

    def _try_acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock.acquire(blocking=False)

    def acquire(self) -> None:
        """Acquire the lock, retrying with exponential backoff.

        Raises:
            LockAcquisitionError: If the lock is still held after all retries
        """
        attempts = self.options.retries + 1

        def before_sleep_log(retry_state: RetryCallState) -> None:
            logger.debug(
                "lock_busy_retrying",
                path=str(self.path),
                attempt=retry_state.attempt_number,
                max_attempts=attempts,
                wait_seconds=retry_state.next_action.sleep
                if retry_state.next_action
                else 0,
            )

        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self.options.min_timeout,
                min=self.options.min_timeout,
                max=self.options.max_timeout,
                exp_base=self.options.factor,
            ),
            retry=retry_if_exception_type(FileLockTimeout),
            before_sleep=before_sleep_log,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._try_acquire()
        except FileLockTimeout as e:
            raise LockAcquisitionError(self.path, attempts) from e

    def release(self) -> None:
        """Release the lock.

        Raises:
            OSError: If the lock could not be released
        """
        if not self.is_held:
            return
        self._lock.release()

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class AccountStore:
    """Loads and saves the account and usage documents.

    File locations are injected; nothing is resolved from the environment.
    """

    def __init__(
        self,
        accounts_path: Path | str,
        usage_path: Path | str,
        lock_options: LockOptions | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.accounts_path = Path(accounts_path).expanduser()
        self.usage_path = Path(usage_path).expanduser()
        self.lock_options = lock_options or LockOptions()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: "RotationSettings") -> "AccountStore":
        """Build a store from configured paths and lock parameters."""
        return cls(
            accounts_path=settings.accounts_path,
            usage_path=settings.usage_path,
            lock_options=LockOptions(
                retries=settings.lock_retries,
                min_timeout=settings.lock_min_timeout_seconds,
                max_timeout=settings.lock_max_timeout_seconds,
                factor=settings.lock_backoff_factor,
            ),
        )

    def path_for(self, kind: DocumentKind) -> Path:
        """File path holding ``kind``."""
        if kind is DocumentKind.ACCOUNTS:
            return self.accounts_path
        return self.usage_path

    def ensure_exists(self, path: Path, kind: DocumentKind) -> bool:
        """Create ``path`` with an empty default document if it is absent.

        Called with the lock for ``path`` held. An existing file is never
        replaced, even by a concurrent creator.

        Returns:
            True if the file was created
        """
        if path.exists():
            return False
        created = create_exclusive_bytes(path, _dumps(default_document(kind)))
        if created:
            logger.debug("document_created", path=str(path), kind=str(kind))
        return created

    def with_lock(self, path: Path, kind: DocumentKind, fn: Callable[[], T]) -> T:
        """Run ``fn`` while holding the advisory lock for ``path``.

        The document is created with default content once the lock is held.
        A failure to release the lock is logged and does not affect the
        result of ``fn``.

        Raises:
            LockAcquisitionError: If the lock could not be acquired
        """
        lock = FileLock(path, self.lock_options, sleep=self._sleep)
        try:
            lock.acquire()
            self.ensure_exists(path, kind)
            return fn()
        except Exception:
            logger.exception("locked_operation_failed", path=str(path), kind=str(kind))
            raise
        finally:
            if lock.is_held:
                try:
                    lock.release()
                except OSError as e:
                    logger.warning("lock_release_failed", path=str(path), error=str(e))

    def load(self, kind: DocumentKind) -> LoadResult:
        """Read a document without locking.

        Never raises and never writes: a missing, unreadable or corrupt file
        yields the default document, tagged with the reason.
        """
        path = self.path_for(kind)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return LoadResult(default_document(kind), StorageIssue.MISSING)
        except OSError as e:
            logger.error("document_read_failed", path=str(path), error=str(e))
            return LoadResult(default_document(kind), StorageIssue.UNREADABLE)

        try:
            document = parse_document(kind, orjson.loads(raw))
        except (ValueError, TypeError, AttributeError) as e:
            # orjson.JSONDecodeError is a ValueError subclass
            logger.error("document_corrupt", path=str(path), error=str(e))
            return LoadResult(default_document(kind), StorageIssue.CORRUPT)

        return LoadResult(document)

    def save(self, kind: DocumentKind, document: Document) -> None:
        """Atomically replace a document while holding its lock.

        Raises:
            LockAcquisitionError: If the lock could not be acquired
        """
        path = self.path_for(kind)
        payload = _dumps(document)
        self.with_lock(path, kind, lambda: atomic_write_bytes(path, payload))
        logger.debug("document_saved", path=str(path), kind=str(kind))

    def load_accounts(self) -> AccountDocument:
        """Load the account document (default on failure)."""
        return self.load(DocumentKind.ACCOUNTS).document

    def load_usage(self) -> UsageDocument:
        """Load the usage document (default on failure)."""
        return self.load(DocumentKind.USAGE).document

    def save_accounts(self, document: AccountDocument) -> None:
        """Persist the account document under lock."""
        self.save(DocumentKind.ACCOUNTS, document)

    def save_usage(self, document: UsageDocument) -> None:
        """Persist the usage document under lock."""
        self.save(DocumentKind.USAGE, document)


def _dumps(document: Document) -> bytes:
    return orjson.dumps(document.to_dict(), option=orjson.OPT_INDENT_2)
