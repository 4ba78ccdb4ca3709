"""Export pipeline: store stream -> decode -> resample -> unify -> sink."""
from dataclasses import dataclass
from typing import List, Optional
import logging
import threading
import time

from obslytics.chunkenc import decode_series
from obslytics.errors import ExportCancelledError, ExportError, SinkError
from obslytics.resample import aggregate
from obslytics.schema import ColumnSchema, RowUnifier
from obslytics.self_metrics import ExportMetrics
from obslytics.series import Matcher, TimeRange, format_matchers
from obslytics.sinks import Sink
from obslytics.storeapi import StoreClient

logger = logging.getLogger(__name__)

STREAMING = "streaming"
TWO_PASS = "two_pass"


@dataclass
class ExportParams:
    """What to export."""
    time_range: TimeRange
    matchers: List[Matcher]
    resolution: int  # milliseconds
    schema_mode: Optional[str] = None  # None: two_pass for fixed-schema sinks

    def __post_init__(self):
        if self.resolution <= 0:
            raise ValueError(f"Resolution must be positive, got {self.resolution}")
        if self.schema_mode not in (None, STREAMING, TWO_PASS):
            raise ValueError(f"Unknown schema mode: {self.schema_mode}")


@dataclass
class ExportSummary:
    """Counts of what one export produced."""
    series: int = 0
    samples: int = 0
    rows: int = 0
    columns: int = 0
    duration_s: float = 0.0


class _CountingSamples:
    """Passes samples through while counting them."""

    def __init__(self, samples):
        self._samples = samples
        self.count = 0

    def __iter__(self):
        for sample in self._samples:
            self.count += 1
            yield sample


class Exporter:
    """Main engine that drives one export from the store to a sink."""

    def __init__(self, client: StoreClient, metrics: Optional[ExportMetrics] = None):
        self.client = client
        self.metrics = metrics

    def prescan(
        self,
        params: ExportParams,
        schema: ColumnSchema,
        cancel_event: Optional[threading.Event] = None,
    ):
        """First pass of two-pass mode: collect every label name without chunks."""
        cursor = self.client.open(
            params.time_range, params.matchers, cancel_event=cancel_event, skip_chunks=True
        )
        try:
            for raw in cursor:
                schema.observe(name for name, _ in raw.labels)
        finally:
            cursor.close()
        logger.info(f"Pre-scan found {len(schema)} label columns")

    def run(
        self,
        params: ExportParams,
        sink: Sink,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExportSummary:
        """
        Export everything matching params into sink.

        The sink is finalized and the stream closed on every path. The next
        series is only pulled after all rows of the previous one were handed
        to the sink.

        Raises:
            ExportError: The first failure, with its original cause chained
        """
        start = time.time()
        summary = ExportSummary()
        schema = ColumnSchema()
        unifier = RowUnifier(schema)

        mode = params.schema_mode or (TWO_PASS if sink.requires_fixed_schema else STREAMING)
        logger.info(
            f"Exporting {format_matchers(params.matchers)} "
            f"[{params.time_range.min_t}, {params.time_range.max_t}] "
            f"at {params.resolution}ms resolution ({mode} schema)"
        )

        try:
            try:
                if mode == TWO_PASS:
                    self.prescan(params, schema, cancel_event)
                self._stream(params, sink, unifier, summary, cancel_event)
            except BaseException:
                # The first failure wins over a failing finalize.
                try:
                    sink.finalize()
                except SinkError as finalize_err:
                    logger.warning(f"Sink finalize failed after an earlier error: {finalize_err}")
                raise
            sink.finalize()
        except ExportError as e:
            if self.metrics:
                self.metrics.record_export_error(e.kind)
            raise
        finally:
            summary.duration_s = time.time() - start
            if self.metrics:
                self.metrics.record_export_duration(summary.duration_s)

        summary.columns = len(schema)
        logger.info(
            f"Export finished: {summary.series} series, {summary.samples} samples, "
            f"{summary.rows} rows, {summary.columns} label columns in {summary.duration_s:.3f}s"
        )
        return summary

    def _stream(self, params, sink, unifier, summary, cancel_event):
        cursor = self.client.open(params.time_range, params.matchers, cancel_event=cancel_event)
        try:
            while cursor.advance():
                raw = cursor.current()
                samples = _CountingSamples(
                    decode_series(raw.chunks, params.time_range, series_key=raw.label_key())
                )
                rows = 0
                for bucket in aggregate(samples, params.resolution, params.time_range):
                    if cancel_event is not None and cancel_event.is_set():
                        raise ExportCancelledError(
                            f"Export cancelled while processing series {{{raw.label_key()}}}"
                        )
                    row = unifier.unify(bucket, raw.labels)
                    try:
                        sink.write_row(row)
                    except SinkError:
                        raise
                    except Exception as e:
                        raise SinkError(f"Sink failed to write row: {e}") from e
                    rows += 1

                summary.series += 1
                summary.samples += samples.count
                summary.rows += rows
                if self.metrics:
                    self.metrics.record_series(samples.count, rows)
                    self.metrics.set_schema_columns(len(unifier.schema))

            if cursor.err() is not None:
                raise cursor.err()
        finally:
            cursor.close()
