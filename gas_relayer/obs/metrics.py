"""In-process counters, gauges and histograms with Prometheus text exposition.

No external dependencies. Each instrument guards its own state with a lock, so
request tasks and worker threads can record concurrently without a global lock.
One registry is built at startup and handed to everything that records or
exports; there is no module-level registry.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
import bisect
import math
import re
import threading

from gas_relayer.obs.logger import log_event


CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"

DEFAULT_PREFIX = "gas_relayer"

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")

Sample = Tuple[str, Dict[str, str], float]


class MetricRegistrationError(ValueError):
    """An instrument could not be registered (bad name, duplicate, bad buckets)."""


class MetricsExportError(RuntimeError):
    """The registry could not be serialized to exposition text."""


def _format_value(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(value)


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label_value(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(labels: Dict[str, str]) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{k}="{_escape_label_value(v)}"' for k, v in labels.items())
    return "{" + inner + "}"


def _non_negative(value: Any) -> float:
    """Clamp recorded amounts: negative, NaN, infinite or non-numeric become 0."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(v) or v < 0:
        return 0.0
    return v


def classify_status(status_code: int) -> str:
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    if status_code >= 300:
        return "redirect"
    if status_code >= 200:
        return "success"
    return "informational"


def is_error_status(status_code: int) -> bool:
    return 400 <= status_code <= 599


class Instrument:
    """Base class for a single named metric."""

    kind = "untyped"

    def __init__(self, name: str, help_text: str = ""):
        if not _METRIC_NAME_RE.match(name or ""):
            raise MetricRegistrationError(f"Invalid metric name: {name!r}")
        self.name = name
        self.help_text = help_text
        self._lock = threading.Lock()

    def sample_names(self) -> Tuple[str, ...]:
        return (self.name,)

    def samples(self) -> List[Sample]:
        raise NotImplementedError

    def snapshot(self) -> Dict[str, Any]:
        raise NotImplementedError


class Counter(Instrument):
    """A monotonically increasing counter."""

    kind = "counter"

    def __init__(self, name: str, help_text: str = ""):
        super().__init__(name, help_text)
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters can only be incremented by non-negative amounts")
        with self._lock:
            self._value += amount

    def get(self) -> float:
        with self._lock:
            return self._value

    def samples(self) -> List[Sample]:
        return [(self.name, {}, self.get())]

    def snapshot(self) -> Dict[str, Any]:
        return {"name": self.name, "help": self.help_text, "value": self.get()}


class Gauge(Instrument):
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help_text: str = ""):
        super().__init__(name, help_text)
        self._value = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.inc(-amount)

    def get(self) -> float:
        with self._lock:
            return self._value

    def samples(self) -> List[Sample]:
        return [(self.name, {}, self.get())]

    def snapshot(self) -> Dict[str, Any]:
        return {"name": self.name, "help": self.help_text, "value": self.get()}


class Histogram(Instrument):
    """Fixed-bucket histogram. Bucket bounds are inclusive upper limits."""

    kind = "histogram"

    DEFAULT_BUCKETS: Tuple[float, ...] = (
        0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
    )

    def __init__(self, name: str, help_text: str = "", buckets: Optional[Sequence[float]] = None):
        super().__init__(name, help_text)
        self.buckets = self._validate_buckets(
            name, self.DEFAULT_BUCKETS if buckets is None else buckets
        )
        # One slot per bound plus the implicit +Inf bucket
        self._counts: List[int] = [0] * (len(self.buckets) + 1)
        self._sum = 0.0
        self._count = 0

    @staticmethod
    def _validate_buckets(name: str, buckets: Sequence[float]) -> Tuple[float, ...]:
        try:
            bounds = [float(b) for b in buckets]
        except (TypeError, ValueError) as exc:
            raise MetricRegistrationError(f"Histogram {name}: non-numeric bucket bound") from exc
        # A trailing +Inf is accepted and folded into the implicit bucket
        if bounds and bounds[-1] == math.inf:
            bounds = bounds[:-1]
        if not bounds:
            raise MetricRegistrationError(f"Histogram {name}: bucket list is empty")
        for b in bounds:
            if not math.isfinite(b):
                raise MetricRegistrationError(f"Histogram {name}: bucket bound {b} is not finite")
        for lower, upper in zip(bounds, bounds[1:]):
            if upper <= lower:
                raise MetricRegistrationError(
                    f"Histogram {name}: buckets must be strictly increasing ({lower} >= {upper})"
                )
        return tuple(bounds)

    def observe(self, value: float) -> None:
        value = float(value)
        idx = bisect.bisect_left(self.buckets, value)
        with self._lock:
            self._counts[idx] += 1
            self._sum += value
            self._count += 1

    def get_sum(self) -> float:
        with self._lock:
            return self._sum

    def get_count(self) -> int:
        with self._lock:
            return self._count

    def _read(self) -> Tuple[List[int], float, int]:
        with self._lock:
            return list(self._counts), self._sum, self._count

    def sample_names(self) -> Tuple[str, ...]:
        return (self.name, f"{self.name}_bucket", f"{self.name}_sum", f"{self.name}_count")

    def samples(self) -> List[Sample]:
        counts, total_sum, total_count = self._read()
        out: List[Sample] = []
        cumulative = 0
        for bound, count in zip(self.buckets, counts):
            cumulative += count
            out.append((f"{self.name}_bucket", {"le": _format_value(bound)}, cumulative))
        out.append((f"{self.name}_bucket", {"le": "+Inf"}, total_count))
        out.append((f"{self.name}_sum", {}, total_sum))
        out.append((f"{self.name}_count", {}, total_count))
        return out

    def snapshot(self) -> Dict[str, Any]:
        counts, total_sum, total_count = self._read()
        cumulative: List[int] = []
        running = 0
        for count in counts:
            running += count
            cumulative.append(running)
        return {
            "name": self.name,
            "help": self.help_text,
            "buckets": list(self.buckets),
            "cumulative_counts": cumulative,
            "sum": total_sum,
            "count": total_count,
        }


class MetricRegistry:
    """Owns every instrument of the service.

    The catalogue is registered in the constructor and the registry is frozen
    afterwards; registering later raises MetricRegistrationError.
    """

    def __init__(self, prefix: str = DEFAULT_PREFIX):
        self.prefix = prefix
        self._instruments: Dict[str, Instrument] = {}
        self._sample_names: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._frozen = False
        self._register_common_metrics()
        self._frozen = True

    def _register_common_metrics(self) -> None:
        # Transaction
        self.transactions_total = self.counter(
            "transactions_total", "Total number of transactions processed")
        self.transactions_success = self.counter(
            "transactions_success_total", "Total number of successful transactions")
        self.transactions_failed = self.counter(
            "transactions_failed_total", "Total number of failed transactions")
        self.transactions_pending = self.gauge(
            "transactions_pending", "Number of transactions currently pending")
        self.transaction_processing_duration = self.histogram(
            "transaction_processing_duration_seconds", "Time spent processing transactions",
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0))

        # Gas
        self.gas_used_total = self.counter(
            "gas_used_total", "Total gas used by relayed transactions")
        self.gas_price_current = self.gauge(
            "gas_price_gwei", "Current gas price in Gwei")
        self.gas_limit_violations = self.counter(
            "gas_limit_violations_total", "Number of transactions exceeding gas limits")

        # Queue
        self.queue_depth = self.gauge(
            "queue_depth", "Number of transactions in processing queue")
        self.queue_processing_time = self.histogram(
            "queue_processing_time_seconds", "Time transactions spend in queue",
            buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0))
        self.queue_retries_total = self.counter(
            "queue_retries_total", "Total number of transaction retries")

        # Database
        self.db_connections_active = self.gauge(
            "db_connections_active", "Number of active database connections")
        self.db_query_duration = self.histogram(
            "db_query_duration_seconds", "Database query execution time",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0))
        self.db_errors_total = self.counter(
            "db_errors_total", "Total number of database errors")

        # RPC
        self.rpc_requests_total = self.counter(
            "rpc_requests_total", "Total number of RPC requests")
        self.rpc_errors_total = self.counter(
            "rpc_errors_total", "Total number of RPC errors")
        self.rpc_latency = self.histogram(
            "rpc_latency_seconds", "RPC request latency",
            buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0))

        # Relayer wallet
        self.relayer_balance = self.gauge(
            "balance_eth", "Relayer wallet balance in ETH")
        self.relayer_nonce_current = self.gauge(
            "nonce_current", "Current nonce of relayer wallet")
        self.relayer_tx_sent = self.counter(
            "tx_sent_total", "Total transactions sent by relayer")

        # Security
        self.invalid_signatures = self.counter(
            "invalid_signatures_total", "Total number of invalid signatures detected")
        self.replay_attacks = self.counter(
            "replay_attacks_total", "Total number of replay attacks detected")
        self.rate_limit_hits = self.counter(
            "rate_limit_hits_total", "Total number of rate limit violations")

        # HTTP surface (no per-request labels; method/path/status go to the log)
        self.http_requests_total = self.counter(
            "http_requests_total", "Total number of HTTP requests handled")
        self.http_request_errors_total = self.counter(
            "http_request_errors_total", "Total number of HTTP requests answered with 4xx/5xx")
        self.http_requests_cancelled_total = self.counter(
            "http_requests_cancelled_total", "Total number of HTTP requests cancelled before a response")
        self.http_request_duration = self.histogram(
            "http_request_duration_seconds", "HTTP request latency")

    # Registration

    def _full_name(self, name: str) -> str:
        return f"{self.prefix}_{name}" if self.prefix else name

    def _register(self, instrument: Instrument) -> Instrument:
        with self._lock:
            if self._frozen:
                raise MetricRegistrationError(
                    f"Cannot register {instrument.name}: registry is frozen after startup"
                )
            if instrument.name in self._instruments:
                raise MetricRegistrationError(f"Duplicate metric name: {instrument.name}")
            for sample_name in instrument.sample_names():
                owner = self._sample_names.get(sample_name)
                if owner is not None:
                    raise MetricRegistrationError(
                        f"Metric {instrument.name} collides with {owner} on {sample_name}"
                    )
            self._instruments[instrument.name] = instrument
            for sample_name in instrument.sample_names():
                self._sample_names[sample_name] = instrument.name
        return instrument

    def counter(self, name: str, help_text: str = "") -> Counter:
        return self._register(Counter(self._full_name(name), help_text))

    def gauge(self, name: str, help_text: str = "") -> Gauge:
        return self._register(Gauge(self._full_name(name), help_text))

    def histogram(self, name: str, help_text: str = "",
                  buckets: Optional[Sequence[float]] = None) -> Histogram:
        return self._register(Histogram(self._full_name(name), help_text, buckets))

    def get(self, name: str) -> Instrument:
        """Look up an instrument by full or unprefixed name."""
        inst = self._instruments.get(name) or self._instruments.get(self._full_name(name))
        if inst is None:
            raise KeyError(name)
        return inst

    def instruments(self) -> List[Instrument]:
        with self._lock:
            return list(self._instruments.values())

    @property
    def frozen(self) -> bool:
        return self._frozen

    # Recording

    def record_transaction_outcome(self, success: bool, duration_seconds: float, gas_used: float = 0.0) -> None:
        duration = _non_negative(duration_seconds)
        self.transactions_total.inc()
        if success:
            self.transactions_success.inc()
        else:
            self.transactions_failed.inc()
        self.transaction_processing_duration.observe(duration)
        if success:
            self.gas_used_total.inc(_non_negative(gas_used))

    def record_transaction_success(self, duration_seconds: float, gas_used: float) -> None:
        self.record_transaction_outcome(True, duration_seconds, gas_used)

    def record_transaction_failure(self, duration_seconds: float) -> None:
        self.record_transaction_outcome(False, duration_seconds)

    def record_rpc_call(self, latency_seconds: float, success: bool) -> None:
        self.rpc_requests_total.inc()
        self.rpc_latency.observe(_non_negative(latency_seconds))
        if not success:
            self.rpc_errors_total.inc()

    def record_db_query(self, duration_seconds: float, success: bool) -> None:
        self.db_query_duration.observe(_non_negative(duration_seconds))
        if not success:
            self.db_errors_total.inc()

    def record_http_request(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        duration = _non_negative(duration_seconds)
        self.http_requests_total.inc()
        self.http_request_duration.observe(duration)
        if is_error_status(status_code):
            self.http_request_errors_total.inc()
        log_event(
            "http_request",
            level="WARNING" if status_code >= 500 else "INFO",
            method=method,
            path=path,
            status=status_code,
            outcome=classify_status(status_code),
            duration_ms=round(duration * 1000.0, 3),
        )

    def record_http_cancelled(self, method: str, path: str, duration_seconds: float) -> None:
        duration = _non_negative(duration_seconds)
        self.http_requests_cancelled_total.inc()
        self.http_request_duration.observe(duration)
        log_event(
            "http_request",
            method=method,
            path=path,
            status=None,
            outcome="cancelled",
            duration_ms=round(duration * 1000.0, 3),
        )

    # Export

    def export(self) -> str:
        """Serialize every instrument in the text exposition format (0.0.4)."""
        try:
            lines: List[str] = []
            for inst in self.instruments():
                lines.append(f"# HELP {inst.name} {_escape_help(inst.help_text)}")
                lines.append(f"# TYPE {inst.name} {inst.kind}")
                for sample_name, labels, value in inst.samples():
                    lines.append(f"{sample_name}{_format_labels(labels)} {_format_value(value)}")
            body = "\n".join(lines) + "\n"
            # Surface encoding problems here, not in the response writer
            body.encode("utf-8")
            return body
        except (TypeError, ValueError, UnicodeError) as exc:
            raise MetricsExportError(f"Failed to export metrics: {exc}") from exc

    def snapshot(self) -> Dict[str, Any]:
        counters: List[Dict[str, Any]] = []
        gauges: List[Dict[str, Any]] = []
        histograms: List[Dict[str, Any]] = []
        for inst in self.instruments():
            if isinstance(inst, Counter):
                counters.append(inst.snapshot())
            elif isinstance(inst, Gauge):
                gauges.append(inst.snapshot())
            elif isinstance(inst, Histogram):
                histograms.append(inst.snapshot())
        return {"counters": counters, "gauges": gauges, "histograms": histograms}
