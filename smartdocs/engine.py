# engine.py
import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from .exceptions import ErrorKind, GatewayError, GatewayTimeoutError, NotFoundError, ValidationError
from .models import (
    EngineState,
    ErrorInfo,
    UploadAttempt,
    UploadResult,
    UploadStatus,
    ViewSnapshot,
    utcnow,
)
from .storage.base import StorageGateway
from .storage.dto import ObjectRecord
from .uploads import KeyGenerator, UploadFile, validate_upload

DEFAULT_ACCEPTED_TYPES = ("application/pdf", "image/jpeg", "image/png")

# Added to the SDK timeout so the SDK gives up before the engine stops waiting.
TIMEOUT_MARGIN_SECONDS = 5.0

Subscriber = Callable[[ViewSnapshot], None]


def _retrieve_exception(call: asyncio.Future):
    # Abandoned calls may fail with nobody awaiting them.
    if not call.cancelled():
        call.exception()


def reconcile_listing(records: Iterable[ObjectRecord]) -> tuple:
    """
    Turns a raw listing into snapshot order: one record per key (the most
    recently modified wins), newest first, ties broken by key.
    """
    latest = {}
    for record in records:
        current = latest.get(record.key)
        if current is None or record.last_modified > current.last_modified:
            latest[record.key] = record
    by_key = sorted(latest.values(), key=lambda r: r.key)
    return tuple(sorted(by_key, key=lambda r: r.last_modified, reverse=True))


class ReconciliationEngine:
    """
    Keeps an in-memory view of the objects pending in one storage container.

    The engine lists the container on start, then every `poll_interval`
    seconds, after each successful upload and whenever `refresh()` is called.
    Overlapping refresh requests share a single listing call. Every state
    change produces a new immutable ViewSnapshot that is pushed to subscribers.

    All state is mutated on the event loop; blocking gateway calls run in
    worker threads. `timeout` bounds how long the engine waits for one of
    them. A call that outlives it keeps running in its thread: a listing is
    joined by the next refresh instead of being repeated, and a write is
    looked up before it is reported as failed.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        container: str,
        poll_interval: float = 30.0,
        max_upload_bytes: int = 10 * 1024 * 1024,
        accepted_content_types: Iterable[str] = DEFAULT_ACCEPTED_TYPES,
        timeout: float = 30.0 + TIMEOUT_MARGIN_SECONDS,
        key_generator: Optional[KeyGenerator] = None,
    ):
        self._gateway = gateway
        self._container = container
        self._poll_interval = poll_interval
        self._max_upload_bytes = max_upload_bytes
        self._accepted_types = tuple(accepted_content_types)
        self._timeout = timeout
        self._keys = key_generator or KeyGenerator()

        self._snapshot = ViewSnapshot()
        self._state = EngineState.IDLE
        self._subscribers: List[Subscriber] = []
        self._uploads = {}
        self._refresh_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._listing_call: Optional[asyncio.Future] = None
        self._background = set()
        self._running = False
        self._stopped = False
        self._generation = 0
        self._auth_suspended = False
        self._follow_up_requested = False

    @classmethod
    def from_settings(cls, settings, gateway: Optional[StorageGateway] = None) -> "ReconciliationEngine":
        """
        Builds an engine from application settings. Without an explicit gateway
        one is created from the settings, raising ConfigurationError when
        credentials are missing.
        """
        if gateway is None:
            from .storage.factory import create_gateway

            gateway = create_gateway(settings)
        return cls(
            gateway,
            settings.CONTAINER_NAME,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            max_upload_bytes=settings.MAX_UPLOAD_BYTES,
            accepted_content_types=settings.ACCEPTED_CONTENT_TYPES,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS + TIMEOUT_MARGIN_SECONDS,
        )

    @property
    def container(self) -> str:
        return self._container

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    def get_snapshot(self) -> ViewSnapshot:
        return self._snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Registers a callback for every new snapshot. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # --- Lifecycle ---

    async def start(self):
        """Performs the initial listing, then arms the periodic refresh."""
        if self._running:
            return
        self._running = True
        self._stopped = False
        logging.info(
            f"Starting sync of container '{self._container}'. Poll interval: {self._poll_interval} seconds."
        )
        await self.refresh()
        # stop() may have been called while the initial listing was in flight.
        if self._running:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_forever())

    async def stop(self):
        """
        Cancels the periodic refresh. Listing and upload calls still in flight
        are left to finish in the background; their results are discarded.
        """
        if self._stopped:
            return
        logging.info(f"Stopping sync of container '{self._container}'.")
        self._running = False
        self._stopped = True
        self._generation += 1

        poll_task, self._poll_task = self._poll_task, None
        if poll_task is not None:
            poll_task.cancel()
            try:
                await poll_task
            except asyncio.CancelledError:
                pass

        if self._refresh_task is not None and not self._refresh_task.done():
            logging.info("A listing is still in flight; its result will be discarded.")
        self._refresh_task = None
        self._uploads = {}
        self._state = EngineState.IDLE if self._state == EngineState.REFRESHING else self._state
        self._publish(is_refreshing=False, uploads=())

    async def drain(self):
        """Waits for every background task (triggered refreshes, abandoned calls) to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # --- Refresh ---

    async def refresh(self) -> ViewSnapshot:
        """
        Re-lists the container and returns the resulting snapshot. If a listing
        is already in flight, waits for that one instead of starting another.
        Gateway failures are recorded in the snapshot, never raised.
        """
        if self._stopped:
            logging.warning("Refresh requested after the engine was stopped; ignoring.")
            return self._snapshot
        await asyncio.shield(self._ensure_refresh())
        return self._snapshot

    def _ensure_refresh(self, follow_up: bool = False) -> asyncio.Task:
        """
        Returns the in-flight refresh task, starting one if none is running.
        With follow_up, a listing already in flight (which may have started
        before the caller's write landed) is followed by exactly one more.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._state = EngineState.REFRESHING
            self._publish(is_refreshing=True)
            self._refresh_task = self._spawn(self._run_refresh(self._generation))
        elif follow_up:
            self._follow_up_requested = True
        return self._refresh_task

    async def _run_refresh(self, generation: int):
        while True:
            self._follow_up_requested = False
            await self._list_once(generation)
            if not self._follow_up_requested or self._is_stale(generation):
                return
            logging.info(f"Uploads landed during the last listing; listing '{self._container}' again.")
            self._state = EngineState.REFRESHING
            self._publish(is_refreshing=True)

    def _listing(self) -> asyncio.Future:
        """
        Returns the list_objects call to wait on. A listing that outlived an
        earlier timeout is joined rather than run a second time alongside it.
        """
        call = self._listing_call
        if call is not None and not call.done():
            logging.warning(
                f"An earlier listing of '{self._container}' is still running; waiting on it instead of starting another."
            )
            return call
        self._listing_call = self._start_call(self._gateway.list_objects, self._container)
        return self._listing_call

    async def _list_once(self, generation: int):
        try:
            records = await self._await_call("list_objects", self._listing())
        except GatewayError as e:
            self._refresh_failed(generation, e.kind, str(e))
            return
        except Exception as e:
            logging.critical(
                f"Unexpected error while listing container '{self._container}': {e}", exc_info=True
            )
            self._refresh_failed(generation, ErrorKind.UNEXPECTED, str(e))
            return

        if self._is_stale(generation):
            logging.info(f"Discarding listing of '{self._container}' that finished after teardown.")
            return

        logging.info(f"Listed {len(records)} objects in container '{self._container}'.")
        self._state = EngineState.IDLE
        self._auth_suspended = False
        self._publish(
            records=reconcile_listing(records),
            is_refreshing=False,
            last_error=self._cleared_error("refresh"),
            refreshed_at=utcnow(),
        )

    def _refresh_failed(self, generation: int, kind: ErrorKind, message: str):
        if self._is_stale(generation):
            logging.info(f"Discarding failed listing of '{self._container}' that finished after teardown.")
            return
        if kind == ErrorKind.NETWORK_FAILURE:
            logging.warning(f"Transient failure listing '{self._container}'. Will retry on next refresh. Error: {message}")
        else:
            logging.error(f"Failed to list container '{self._container}'. Error: {message}")
        self._state = EngineState.ERROR
        self._auth_suspended = kind == ErrorKind.UNAUTHORIZED
        # Records are kept: a failed listing must not empty the view.
        self._publish(
            is_refreshing=False,
            last_error=ErrorInfo(operation="refresh", kind=kind, message=message, occurred_at=utcnow()),
        )

    async def _poll_forever(self):
        while True:
            await asyncio.sleep(self._poll_interval)
            if self._auth_suspended:
                logging.warning(
                    "Skipping scheduled refresh: the storage credentials were rejected. "
                    "Fix them and refresh manually to resume polling."
                )
                continue
            await self.refresh()

    # --- Upload ---

    async def upload(self, file: UploadFile) -> UploadResult:
        """
        Validates and writes one file, then triggers a refresh without waiting
        for it. Never raises for validation or gateway failures; the outcome is
        reported in the returned UploadResult.
        """
        if self._stopped:
            return UploadResult(
                status=UploadStatus.UPLOAD_FAILED,
                filename=file.filename,
                reason="The sync engine has been stopped.",
            )

        try:
            content_type = validate_upload(file, self._max_upload_bytes, self._accepted_types)
        except ValidationError as e:
            logging.warning(f"Rejected upload of '{file.filename}': {e}")
            return UploadResult(
                status=UploadStatus.VALIDATION_ERROR,
                filename=file.filename,
                reason=str(e),
                error_kind=ErrorKind.VALIDATION,
            )

        key = self._keys.generate(file.filename)
        generation = self._generation
        self._uploads[key] = UploadAttempt(
            key=key,
            filename=file.filename,
            size_bytes=file.size_bytes,
            content_type=content_type,
            started_at=utcnow(),
        )
        self._publish(uploads=tuple(self._uploads.values()))

        write_call = self._start_call(
            self._gateway.write_object, self._container, key, file.data, content_type
        )
        failure = None
        try:
            await self._await_call("write_object", write_call)
        except GatewayTimeoutError as e:
            if await self._object_exists(key):
                logging.warning(f"Write of '{key}' outlived the timeout, but the object is in the container.")
            else:
                failure = (e.kind, str(e))
                write_call.add_done_callback(lambda call: self._late_write_settled(call, key, generation))
        except GatewayError as e:
            failure = (e.kind, str(e))
        except Exception as e:
            logging.critical(f"Unexpected error while uploading '{file.filename}': {e}", exc_info=True)
            failure = (ErrorKind.UNEXPECTED, str(e))
        finally:
            self._uploads.pop(key, None)

        if failure is not None:
            kind, message = failure
            logging.error(f"Upload of '{file.filename}' as '{key}' failed. Error: {message}")
            if not self._is_stale(generation):
                self._publish(
                    uploads=tuple(self._uploads.values()),
                    last_error=ErrorInfo(operation="upload", kind=kind, message=message, occurred_at=utcnow()),
                )
                if not write_call.done():
                    # The write may still land; the listing shows whatever it left behind.
                    self._ensure_refresh(follow_up=True)
            return UploadResult(
                status=UploadStatus.UPLOAD_FAILED,
                filename=file.filename,
                key=key,
                reason=message,
                error_kind=kind,
            )

        logging.info(f"Uploaded '{file.filename}' as '{key}'.")
        if not self._is_stale(generation):
            self._publish(
                uploads=tuple(self._uploads.values()),
                last_error=self._cleared_error("upload"),
            )
            self._ensure_refresh(follow_up=True)
        return UploadResult(status=UploadStatus.SUCCESS, filename=file.filename, key=key)

    async def upload_many(self, files: Iterable[UploadFile]) -> List[UploadResult]:
        """Uploads files concurrently; results are returned in input order."""
        return list(await asyncio.gather(*(self.upload(f) for f in files)))

    async def _object_exists(self, key: str) -> bool:
        """Looks a key up after its write timed out."""
        try:
            await self._call_gateway(
                "get_object_metadata", self._gateway.get_object_metadata, self._container, key
            )
        except NotFoundError:
            return False
        except Exception as e:
            logging.warning(f"Could not check whether '{key}' landed after its write timed out: {e}")
            return False
        return True

    def _late_write_settled(self, call: asyncio.Future, key: str, generation: int):
        if call.cancelled() or call.exception() is not None or self._is_stale(generation):
            return
        logging.warning(f"Write of '{key}' completed after it was reported as failed; refreshing.")
        self._ensure_refresh(follow_up=True)

    # --- Internals ---

    def _start_call(self, func, *args) -> asyncio.Future:
        """Runs a blocking gateway call in a worker thread and tracks it until it settles."""
        call = asyncio.ensure_future(asyncio.to_thread(func, *args))
        call.add_done_callback(_retrieve_exception)
        self._background.add(call)
        call.add_done_callback(self._background.discard)
        return call

    async def _await_call(self, operation: str, call: asyncio.Future):
        try:
            # shield: a timeout stops the waiting, not the call
            return await asyncio.wait_for(asyncio.shield(call), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(
                f"Gateway {operation} timed out after {self._timeout} seconds."
            ) from e

    async def _call_gateway(self, operation: str, func, *args):
        return await self._await_call(operation, self._start_call(func, *args))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _is_stale(self, generation: int) -> bool:
        return self._stopped or generation != self._generation

    def _cleared_error(self, operation: str) -> Optional[ErrorInfo]:
        last_error = self._snapshot.last_error
        if last_error is not None and last_error.operation == operation:
            return None
        return last_error

    def _publish(self, **changes):
        self._snapshot = self._snapshot.model_copy(update=changes)
        for callback in list(self._subscribers):
            try:
                callback(self._snapshot)
            except Exception as e:
                logging.error(f"Snapshot subscriber {callback!r} failed: {e}", exc_info=True)
