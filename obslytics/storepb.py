"""Thanos StoreAPI message types and conversions.

Only the subset of `thanos.Store/Series` needed for raw series export is
described. Message classes are built from a FileDescriptorProto at import
time, so no generated code has to be kept in sync.
"""
from typing import Iterable, List
import re

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from obslytics.errors import DecodeError, QueryTranslationError
from obslytics.series import EncodedChunk, Matcher, MatchType, RawSeries, TimeRange

SERIES_METHOD = "/thanos.Store/Series"

# PartialResponseStrategy
WARN = 0
ABORT = 1

# Aggr
AGGR_RAW = 0
AGGR_COUNT = 1
AGGR_SUM = 2

# Chunk.Encoding
CHUNK_XOR = 0

_F = descriptor_pb2.FieldDescriptorProto


def _field(msg, name: str, number: int, ftype: int, type_name: str = None,
           repeated: bool = False, oneof_index: int = None):
    fd = msg.field.add(
        name=name,
        number=number,
        type=ftype,
        label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
    )
    if type_name:
        fd.type_name = type_name
    if oneof_index is not None:
        fd.oneof_index = oneof_index
    return fd


def _enum(parent, name: str, values: List[str]):
    enum = parent.enum_type.add(name=name)
    for number, value_name in enumerate(values):
        enum.value.add(name=value_name, number=number)
    return enum


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    f = descriptor_pb2.FileDescriptorProto(
        name="obslytics/storepb/rpc.proto",
        package="thanos",
        syntax="proto3",
    )
    _enum(f, "PartialResponseStrategy", ["WARN", "ABORT"])
    _enum(f, "Aggr", ["RAW", "COUNT", "SUM", "MIN", "MAX", "COUNTER"])

    label = f.message_type.add(name="Label")
    _field(label, "name", 1, _F.TYPE_STRING)
    _field(label, "value", 2, _F.TYPE_STRING)

    matcher = f.message_type.add(name="LabelMatcher")
    _enum(matcher, "Type", ["EQ", "NEQ", "RE", "NRE"])
    _field(matcher, "type", 1, _F.TYPE_ENUM, ".thanos.LabelMatcher.Type")
    _field(matcher, "name", 2, _F.TYPE_STRING)
    _field(matcher, "value", 3, _F.TYPE_STRING)

    chunk = f.message_type.add(name="Chunk")
    _enum(chunk, "Encoding", ["XOR"])
    _field(chunk, "type", 1, _F.TYPE_ENUM, ".thanos.Chunk.Encoding")
    _field(chunk, "data", 2, _F.TYPE_BYTES)
    _field(chunk, "hash", 3, _F.TYPE_UINT64)

    aggr_chunk = f.message_type.add(name="AggrChunk")
    _field(aggr_chunk, "min_time", 1, _F.TYPE_INT64)
    _field(aggr_chunk, "max_time", 2, _F.TYPE_INT64)
    for number, name in enumerate(["raw", "count", "sum", "min", "max", "counter"], start=3):
        _field(aggr_chunk, name, number, _F.TYPE_MESSAGE, ".thanos.Chunk")

    series = f.message_type.add(name="Series")
    _field(series, "labels", 1, _F.TYPE_MESSAGE, ".thanos.Label", repeated=True)
    _field(series, "chunks", 2, _F.TYPE_MESSAGE, ".thanos.AggrChunk", repeated=True)

    request = f.message_type.add(name="SeriesRequest")
    _field(request, "min_time", 1, _F.TYPE_INT64)
    _field(request, "max_time", 2, _F.TYPE_INT64)
    _field(request, "matchers", 3, _F.TYPE_MESSAGE, ".thanos.LabelMatcher", repeated=True)
    _field(request, "max_resolution_window", 4, _F.TYPE_INT64)
    _field(request, "aggregates", 5, _F.TYPE_ENUM, ".thanos.Aggr", repeated=True)
    _field(request, "partial_response_disabled", 6, _F.TYPE_BOOL)
    _field(request, "partial_response_strategy", 7, _F.TYPE_ENUM,
           ".thanos.PartialResponseStrategy")
    _field(request, "skip_chunks", 8, _F.TYPE_BOOL)

    response = f.message_type.add(name="SeriesResponse")
    response.oneof_decl.add(name="result")
    _field(response, "series", 1, _F.TYPE_MESSAGE, ".thanos.Series", oneof_index=0)
    _field(response, "warning", 2, _F.TYPE_STRING, oneof_index=0)

    service = f.service.add(name="Store")
    service.method.add(
        name="Series",
        input_type=".thanos.SeriesRequest",
        output_type=".thanos.SeriesResponse",
        server_streaming=True,
    )
    return f


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"thanos.{name}"))


Label = _message_class("Label")
LabelMatcher = _message_class("LabelMatcher")
Chunk = _message_class("Chunk")
AggrChunk = _message_class("AggrChunk")
Series = _message_class("Series")
SeriesRequest = _message_class("SeriesRequest")
SeriesResponse = _message_class("SeriesResponse")


def translate_matchers(matchers: Iterable[Matcher]) -> list:
    """Convert matchers to their wire form, validating regexes first."""
    out = []
    for m in matchers:
        if not isinstance(m.type, MatchType):
            raise QueryTranslationError(f"Unknown matcher type {m.type!r} for label '{m.name}'")
        if m.type in (MatchType.RE, MatchType.NRE):
            try:
                re.compile(f"^(?:{m.value})$")
            except re.error as e:
                raise QueryTranslationError(f"Invalid regular expression in matcher {m}: {e}") from e
        out.append(LabelMatcher(type=m.type.value, name=m.name, value=m.value))
    return out


def series_request(time_range: TimeRange, matchers: Iterable[Matcher], skip_chunks: bool = False):
    """Build a raw-data Series request that aborts on any partial failure."""
    return SeriesRequest(
        min_time=time_range.min_t,
        max_time=time_range.max_t,
        matchers=translate_matchers(matchers),
        max_resolution_window=0,
        aggregates=[AGGR_COUNT, AGGR_SUM],
        partial_response_strategy=ABORT,
        skip_chunks=skip_chunks,
    )


def to_raw_series(series) -> RawSeries:
    """Convert a wire Series into a RawSeries. Only raw chunks are supported."""
    labels = [(label.name, label.value) for label in series.labels]
    chunks = []
    for aggr_chunk in series.chunks:
        if not aggr_chunk.HasField("raw"):
            key = ",".join(f"{k}={v}" for k, v in sorted(labels))
            raise DecodeError(f"Series {{{key}}} has a chunk without raw data; only raw series are supported")
        chunks.append(EncodedChunk(
            min_t=aggr_chunk.min_time,
            max_t=aggr_chunk.max_time,
            encoding=aggr_chunk.raw.type,
            data=aggr_chunk.raw.data,
        ))
    return RawSeries(labels=labels, chunks=chunks)


def from_raw_series(raw: RawSeries):
    """Build a wire Series, as a store would send it."""
    return Series(
        labels=[Label(name=k, value=v) for k, v in raw.labels],
        chunks=[
            AggrChunk(
                min_time=c.min_t,
                max_time=c.max_t,
                raw=Chunk(type=c.encoding, data=c.data),
            )
            for c in raw.chunks
        ],
    )
