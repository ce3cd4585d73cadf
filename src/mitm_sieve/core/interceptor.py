import logging
import time
from typing import Optional, Set

from mitmproxy import http, tls

from ..errors import ParseError
from ..models import ConnectionPhase, Decision
from .events import EventLog
from .policy import PolicyStore
from .utils import request_target

logger = logging.getLogger("mitm_sieve")

BLOCKED_STATUS = 403
BLOCKED_MESSAGE = "Blocked by proxy"

# mitmproxy logs connection-level protocol errors here
PROXY_LOGGER = "mitmproxy.proxy"

_PARSE_MARKERS = (
    "no host header",
    "bad http request",
    "invalid http request",
    "invalid request",
    "malformed",
)
_REJECTION_MARKERS = _PARSE_MARKERS + ("invalid headers", "http version")

# flow.metadata keys
PHASE = "sieve_phase"
LOGGED = "sieve_logged"
STARTED = "sieve_started"
STREAMED_BYTES = "sieve_bytes"
TARGET = "sieve_target"
POLICY_VERSION = "sieve_policy_version"

_TRANSITIONS = {
    None: {ConnectionPhase.ACCEPTED},
    ConnectionPhase.ACCEPTED: {ConnectionPhase.PARSING, ConnectionPhase.FAILED},
    ConnectionPhase.PARSING: {ConnectionPhase.DECIDING, ConnectionPhase.FAILED},
    ConnectionPhase.DECIDING: {
        ConnectionPhase.FORWARDING,
        ConnectionPhase.REJECTING,
        ConnectionPhase.FAILED,
    },
    ConnectionPhase.FORWARDING: {ConnectionPhase.COMPLETED, ConnectionPhase.FAILED},
    ConnectionPhase.REJECTING: {ConnectionPhase.COMPLETED, ConnectionPhase.FAILED},
}


class FilterInterceptor:
    """Allows or rejects every request against the published policy.

    Each flow walks accepted -> parsing -> deciding -> forwarding|rejecting
    and ends completed or failed, producing exactly one log entry.
    """

    def __init__(self, policies: PolicyStore, events: EventLog, intercept_tls: bool = False):
        self.policies = policies
        self.events = events
        self.intercept_tls = intercept_tls
        self.draining = False
        self._in_flight: Set[str] = set()
        self._rejections: Optional[RejectedRequestLog] = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # --- mitmproxy hooks ---

    def http_connect(self, flow: http.HTTPFlow):
        self._handle_request(flow, tunnel=True)

    def tls_clienthello(self, data: tls.ClientHelloData):
        # Allowed tunnels are relayed as-is unless TLS interception is on.
        if not self.intercept_tls:
            data.ignore_connection = True

    def request(self, flow: http.HTTPFlow):
        self._handle_request(flow, tunnel=False)

    def responseheaders(self, flow: http.HTTPFlow):
        if flow.metadata.get(PHASE) is not ConnectionPhase.FORWARDING or not flow.response:
            return

        flow.metadata[STREAMED_BYTES] = 0

        def count_bytes(data: bytes) -> bytes:
            flow.metadata[STREAMED_BYTES] += len(data)
            return data

        flow.response.stream = count_bytes

    def response(self, flow: http.HTTPFlow):
        if flow.metadata.get(LOGGED) or not flow.response:
            return
        if STREAMED_BYTES in flow.metadata:
            size = flow.metadata[STREAMED_BYTES]
        else:
            size = len(flow.response.raw_content or b"")
        self._finish(
            flow,
            ConnectionPhase.COMPLETED,
            Decision.ALLOWED,
            status_code=flow.response.status_code,
            bytes_sent=size,
        )

    def error(self, flow: http.HTTPFlow):
        if flow.metadata.get(LOGGED):
            return
        message = flow.error.msg if flow.error else "unknown error"
        cause = classify_error(message)
        # Nothing goes upstream before the request hook has run.
        if STARTED not in flow.metadata and cause == "upstream":
            cause = "parse"
        self._finish(
            flow,
            ConnectionPhase.FAILED,
            Decision.ERROR,
            status_code=flow.response.status_code if flow.response else None,
            cause=cause,
            message=message,
        )

    def running(self):
        if self._rejections is None:
            self._rejections = RejectedRequestLog(self)
            logging.getLogger(PROXY_LOGGER).addHandler(self._rejections)

    def done(self):
        if self._rejections is not None:
            logging.getLogger(PROXY_LOGGER).removeHandler(self._rejections)
            self._rejections = None

    def record_rejected(self, message: str):
        """Logs a request mitmproxy answered with 400 without creating a flow."""
        self.events.record_request(
            None,
            "",
            Decision.ERROR,
            status_code=400,
            cause="parse",
            message=message,
        )

    # --- internals ---

    def _handle_request(self, flow: http.HTTPFlow, tunnel: bool):
        if flow.metadata.get(LOGGED):
            return
        self._advance(flow, ConnectionPhase.ACCEPTED)
        flow.metadata[STARTED] = time.time()

        try:
            if self.draining:
                self._fail(flow, 503, "shutdown", "Proxy is shutting down")
                return

            self._advance(flow, ConnectionPhase.PARSING)
            target = self._parse(flow)

            self._advance(flow, ConnectionPhase.DECIDING)
            # One snapshot for the whole decision.
            decision, policy = self.policies.decide(target)
            flow.metadata[POLICY_VERSION] = policy.version

            if decision is Decision.DENIED:
                self._advance(flow, ConnectionPhase.REJECTING)
                flow.response = http.Response.make(
                    BLOCKED_STATUS,
                    BLOCKED_MESSAGE,
                    {"Content-Type": "text/plain"},
                )
                self._finish(
                    flow,
                    ConnectionPhase.COMPLETED,
                    Decision.DENIED,
                    status_code=BLOCKED_STATUS,
                )
                return

            self._advance(flow, ConnectionPhase.FORWARDING)
            if tunnel:
                # mitmproxy answers the CONNECT itself and relays from here.
                self._finish(flow, ConnectionPhase.COMPLETED, Decision.ALLOWED, status_code=200)
            else:
                self._in_flight.add(flow.id)

        except ParseError as e:
            self._fail(flow, 400, "parse", str(e))
        except Exception as e:
            logger.error("Couldn't handle request %s: %s", flow.id, e)
            self._fail(flow, 502, "internal", str(e))

    def _parse(self, flow: http.HTTPFlow) -> str:
        request = flow.request
        if not request.host:
            raise ParseError("Request names no target host")
        target = request_target(request)
        flow.metadata[TARGET] = target
        return target

    def _fail(self, flow: http.HTTPFlow, status_code: int, cause: str, message: str):
        flow.response = http.Response.make(
            status_code,
            message,
            {"Content-Type": "text/plain"},
        )
        self._finish(
            flow,
            ConnectionPhase.FAILED,
            Decision.ERROR,
            status_code=status_code,
            cause=cause,
            message=message,
        )

    def _advance(self, flow: http.HTTPFlow, phase: ConnectionPhase):
        current = flow.metadata.get(PHASE)
        if phase not in _TRANSITIONS.get(current, set()):
            logger.debug("Unexpected transition for %s: %s -> %s", flow.id, current, phase)
        flow.metadata[PHASE] = phase

    def _finish(
        self,
        flow: http.HTTPFlow,
        phase: ConnectionPhase,
        decision: Decision,
        *,
        status_code: Optional[int] = None,
        bytes_sent: int = 0,
        cause: Optional[str] = None,
        message: Optional[str] = None,
    ):
        if flow.metadata.get(LOGGED):
            return
        self._advance(flow, phase)
        flow.metadata[LOGGED] = True
        self._in_flight.discard(flow.id)

        started = flow.metadata.get(STARTED) or flow.request.timestamp_start
        target = flow.metadata.get(TARGET)
        if target is None:
            target = request_target(flow.request) if flow.request.host else ""

        self.events.record_request(
            flow.request.method,
            target,
            decision,
            status_code=status_code,
            duration_ms=max(0.0, (time.time() - started) * 1000),
            bytes_sent=bytes_sent,
            cause=cause,
            message=message,
            policy_version=flow.metadata.get(POLICY_VERSION),
        )


def classify_error(message: str) -> str:
    lowered = message.lower()
    if any(marker in lowered for marker in _PARSE_MARKERS):
        return "parse"
    if "timeout" in lowered or "timed out" in lowered:
        return "timeout"
    if "client disconnected" in lowered:
        return "client"
    return "upstream"


class RejectedRequestLog(logging.Handler):
    """Turns mitmproxy's "<client>: <reason>" rejection messages into log entries.

    An HTTP/1 request line that cannot be parsed is answered with 400 by
    mitmproxy itself and never becomes a flow, so no addon hook sees it.
    """

    def __init__(self, interceptor: FilterInterceptor):
        super().__init__()
        self.interceptor = interceptor

    def emit(self, record: logging.LogRecord):
        message = record.getMessage()
        _, sep, reason = message.partition(": ")
        lowered = (reason if sep else message).lower()
        if any(marker in lowered for marker in _REJECTION_MARKERS):
            self.interceptor.record_rejected(message)
