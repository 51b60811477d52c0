import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextvars import ContextVar
from collections import defaultdict
from threading import Lock

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


class StructuredLogger:
    """
    Structured JSON logger for observability.
    Emits one log line per event with consistent base fields.
    """

    def __init__(self, name: str = "fortress_mdm"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def _base_fields(self) -> Dict[str, Any]:
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id_var.get(),
        }

    def log_event(
        self,
        event: str,
        level: str = "INFO",
        **fields
    ) -> None:
        """
        Log a structured event with additional fields.

        Args:
            event: Event name (e.g., "command.created", "heartbeat.ingest")
            level: Log level (INFO, WARN, ERROR)
            **fields: Additional event-specific fields
        """
        log_entry = self._base_fields()
        log_entry["level"] = level
        log_entry["event"] = event
        log_entry.update(fields)

        log_line = json.dumps(log_entry, default=str)

        if level == "ERROR":
            self.logger.error(log_line)
        elif level == "WARN":
            self.logger.warning(log_line)
        else:
            self.logger.info(log_line)


def _format_labels(labels: Dict[str, str]) -> str:
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


class MetricsCollector:
    """
    In-memory counters and histograms rendered in Prometheus text format.
    """

    latency_buckets = [5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000]

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[tuple, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: Dict[str, Dict[tuple, list]] = defaultdict(lambda: defaultdict(list))

    def inc_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._counters[metric_name][label_tuple] += value

    def observe_histogram(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._histograms[metric_name][label_tuple].append(value)

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            return self._counters.get(metric_name, {}).get(label_tuple, 0)

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

    def get_prometheus_text(self) -> str:
        lines = []

        with self._lock:
            for metric_name, label_data in sorted(self._counters.items()):
                lines.append(f"# TYPE {metric_name} counter")
                for label_tuple, count in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{_format_labels(dict(label_tuple))}}} {count}")
                    else:
                        lines.append(f"{metric_name} {count}")

            for metric_name, label_data in sorted(self._histograms.items()):
                lines.append(f"# TYPE {metric_name} histogram")
                for label_tuple, observations in sorted(label_data.items()):
                    label_dict = dict(label_tuple)

                    for bucket in self.latency_buckets + ["+Inf"]:
                        if bucket == "+Inf":
                            count = len(observations)
                        else:
                            count = sum(1 for obs in observations if obs <= bucket)
                        bucket_labels = {**label_dict, "le": str(bucket)}
                        lines.append(f"{metric_name}_bucket{{{_format_labels(bucket_labels)}}} {count}")

                    suffix = f"{{{_format_labels(label_dict)}}}" if label_dict else ""
                    lines.append(f"{metric_name}_count{suffix} {len(observations)}")
                    lines.append(f"{metric_name}_sum{suffix} {sum(observations)}")

        return "\n".join(lines) + "\n"


structured_logger = StructuredLogger()
metrics = MetricsCollector()
