"""Shared fixtures: an in-process StoreAPI server."""
from concurrent import futures
from typing import Dict, List, Optional
import re
import threading
import time

import grpc
import pytest

from obslytics import storepb
from obslytics.series import RawSeries


def _matches(matcher, labels: Dict[str, str]) -> bool:
    value = labels.get(matcher.name, "")
    if matcher.type == storepb.LabelMatcher.EQ:
        return value == matcher.value
    if matcher.type == storepb.LabelMatcher.NEQ:
        return value != matcher.value
    found = re.fullmatch(matcher.value, value) is not None
    return found if matcher.type == storepb.LabelMatcher.RE else not found


class FakeStore:
    """Serves configured series over thanos.Store/Series."""

    def __init__(self):
        self.series: List[RawSeries] = []
        self.requests = []
        self.warning: Optional[str] = None
        self.abort_code: Optional[grpc.StatusCode] = None
        self.hang_after_series = False
        # set by grpc once a Series call ends, however it ends
        self.terminated = threading.Event()
        self.sent = 0

    def Series(self, request, context):
        self.requests.append(request)
        context.add_callback(self.terminated.set)
        if self.abort_code is not None:
            context.abort(self.abort_code, "store refused the request")

        for raw in self.series:
            labels = dict(raw.labels)
            if not all(_matches(m, labels) for m in request.matchers):
                continue
            wire = storepb.from_raw_series(raw)
            if request.skip_chunks:
                del wire.chunks[:]
            self.sent += 1
            yield storepb.SeriesResponse(series=wire)

        if self.warning is not None:
            yield storepb.SeriesResponse(warning=self.warning)

        if self.hang_after_series:
            while context.is_active():
                time.sleep(0.01)


@pytest.fixture
def store():
    """A running fake store and its address."""
    fake = FakeStore()
    handler = grpc.method_handlers_generic_handler(
        "thanos.Store",
        {
            "Series": grpc.unary_stream_rpc_method_handler(
                fake.Series,
                request_deserializer=storepb.SeriesRequest.FromString,
                response_serializer=storepb.SeriesResponse.SerializeToString,
            )
        },
    )
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=4))
    server.add_generic_rpc_handlers((handler,))
    port = server.add_insecure_port("localhost:0")
    server.start()
    fake.address = f"localhost:{port}"
    yield fake
    server.stop(None)
