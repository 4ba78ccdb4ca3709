"""Streaming Series client for the Thanos StoreAPI."""
from typing import Iterator, List, Optional
import logging
import threading

import grpc
from opentelemetry import trace
from prometheus_client import CollectorRegistry

from obslytics import storepb
from obslytics.errors import (
    ExportCancelledError, ExportError, QueryTranslationError,
    RemoteAbortError, StoreConnectionError
)
from obslytics.self_metrics import GRPCClientMetrics
from obslytics.series import Matcher, RawSeries, TimeRange, format_matchers
from obslytics.tls import DialOptions

# How often the cancellation watcher checks whether the cursor was closed.
_CANCEL_POLL_S = 0.05


def classify_rpc_error(err: grpc.RpcError, endpoint: str, cancelled: bool = False) -> ExportError:
    """Map a gRPC failure onto an export error kind, keeping it as the cause."""
    code = err.code() if isinstance(err, grpc.Call) else None
    details = err.details() if isinstance(err, grpc.Call) else str(err)

    if cancelled or code in (grpc.StatusCode.CANCELLED, grpc.StatusCode.DEADLINE_EXCEEDED):
        cls = ExportCancelledError
    elif code == grpc.StatusCode.ABORTED:
        cls = RemoteAbortError
    elif code == grpc.StatusCode.INVALID_ARGUMENT:
        cls = QueryTranslationError
    else:
        cls = StoreConnectionError

    code_name = code.name if code is not None else "UNKNOWN"
    exc = cls(f"storepb.Series against {endpoint}: {code_name}: {details}")
    exc.__cause__ = err
    return exc


class StoreClient:
    """Opens Series streams against one StoreAPI endpoint.

    Process-wide collaborators (metrics registry, tracer, logger) are passed
    in here rather than looked up globally.
    """

    def __init__(
        self,
        endpoint: str,
        dial_options: Optional[DialOptions] = None,
        registry: Optional[CollectorRegistry] = None,
        tracer: Optional[trace.Tracer] = None,
        logger: Optional[logging.Logger] = None,
        timeout_s: Optional[float] = None,
        metrics_prefix: str = "",
    ):
        self.endpoint = endpoint
        self.dial_options = dial_options or DialOptions()
        self.tracer = tracer or trace.NoOpTracer()
        self.logger = logger or logging.getLogger(__name__)
        self.timeout_s = timeout_s
        self.grpc_metrics = GRPCClientMetrics(registry, metrics_prefix) if registry is not None else None

    def open(
        self,
        time_range: TimeRange,
        matchers: List[Matcher],
        cancel_event: Optional[threading.Event] = None,
        skip_chunks: bool = False,
    ) -> "SeriesCursor":
        """
        Start a Series call and return a cursor over its responses.

        One channel is created per call and released by SeriesCursor.close().

        Raises:
            QueryTranslationError: If a matcher cannot be sent to the store
            StoreConnectionError: If the channel cannot be created
            ExportCancelledError: If cancel_event is already set
        """
        request = storepb.series_request(time_range, matchers, skip_chunks=skip_chunks)
        if cancel_event is not None and cancel_event.is_set():
            raise ExportCancelledError("Export cancelled before the Series call was started")

        with self.tracer.start_as_current_span(
            "storeapi.Series",
            attributes={
                "store.endpoint": self.endpoint,
                "store.matchers": format_matchers(matchers),
                "store.min_time": time_range.min_t,
                "store.max_time": time_range.max_t,
                "store.skip_chunks": skip_chunks,
            },
        ):
            try:
                channel = self.dial_options.open_channel(self.endpoint)
            except (grpc.RpcError, ValueError) as e:
                raise StoreConnectionError(f"Error initializing gRPC channel to {self.endpoint}: {e}") from e

            stub_channel = channel
            if self.grpc_metrics is not None:
                stub_channel = grpc.intercept_channel(channel, self.grpc_metrics)

            series = stub_channel.unary_stream(
                storepb.SERIES_METHOD,
                request_serializer=storepb.SeriesRequest.SerializeToString,
                response_deserializer=storepb.SeriesResponse.FromString,
            )
            call = series(request, timeout=self.timeout_s)

        self.logger.debug(
            f"Opened Series stream against {self.endpoint} for {format_matchers(matchers)} "
            f"[{time_range.min_t}, {time_range.max_t}]"
        )
        return SeriesCursor(self.endpoint, channel, call, cancel_event, self.logger)


class SeriesCursor:
    """
    Pull-based cursor over the RawSeries of one Series call.

    advance() blocks until the next series arrives or the stream ends; it
    returns False both on a clean end and on failure, so check err()
    afterwards. The cursor has a single owner and must not be advanced from
    several threads at once.
    """

    def __init__(self, endpoint: str, channel: grpc.Channel, call, cancel_event, logger):
        self.endpoint = endpoint
        self._channel = channel
        self._call = call
        self._logger = logger
        self._current: Optional[RawSeries] = None
        self._err: Optional[ExportError] = None
        self._finished = False
        self._closed = False
        self._cancel_requested = False
        self._close_lock = threading.Lock()
        self._closing = threading.Event()
        self.received = 0

        if cancel_event is not None:
            watcher = threading.Thread(
                target=self._watch_cancel,
                args=(cancel_event,),
                name="series-cancel-watcher",
                daemon=True
            )
            watcher.start()

    def _watch_cancel(self, cancel_event: threading.Event):
        """Abort the in-flight call as soon as the caller cancels."""
        while not self._closing.is_set():
            if cancel_event.wait(_CANCEL_POLL_S):
                self._cancel_requested = True
                self._call.cancel()
                return

    def advance(self) -> bool:
        """Move to the next series; False at end of stream or on error."""
        if self._finished or self._closed:
            return False

        try:
            while True:
                response = next(self._call)
                kind = response.WhichOneof("result")
                if kind == "series":
                    self._current = storepb.to_raw_series(response.series)
                    self.received += 1
                    return True
                if kind == "warning":
                    raise RemoteAbortError(
                        f"Store {self.endpoint} returned a partial response warning: {response.warning}"
                    )
                # Unknown frames carry no data.
        except StopIteration:
            if self._cancel_requested:
                self._err = ExportCancelledError("Export cancelled")
        except grpc.RpcError as e:
            self._err = classify_rpc_error(e, self.endpoint, cancelled=self._cancel_requested)
        except ExportError as e:
            self._err = e

        self._finished = True
        self._current = None
        return False

    def current(self) -> RawSeries:
        """The series the last successful advance() moved to."""
        if self._current is None:
            raise RuntimeError("current() called without a successful advance()")
        return self._current

    def err(self) -> Optional[ExportError]:
        return self._err

    def close(self):
        """
        Release the call and its channel. Safe to call more than once and
        after an error.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._closing.set()

        # A stream that was not drained is still open on the store side.
        if not self._finished:
            self._call.cancel()
        self._channel.close()
        self._logger.debug(f"Closed Series stream against {self.endpoint} after {self.received} series")

    def __iter__(self) -> Iterator[RawSeries]:
        while self.advance():
            yield self.current()
        if self._err is not None:
            raise self._err

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
