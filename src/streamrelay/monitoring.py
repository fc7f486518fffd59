from __future__ import annotations
import logging
from collections.abc import Container
from pathlib import Path
from typing import Optional

from prometheus_client.exposition import write_to_textfile
from prometheus_client.metrics import Gauge
from prometheus_client.process_collector import ProcessCollector
from prometheus_client.registry import CollectorRegistry

from streamrelay import settings
from streamrelay.api.models import SystemStats
from streamrelay.misc.periodic import Periodic
from streamrelay.models import BaseModel, SessionStatus
from streamrelay.stats.aggregator import StatsAggregator


log = logging.getLogger(__name__)


class Monitoring:
    """Writes node metrics to a text file for the Prometheus node exporter."""
    METRIC_PREFIX = 'streamrelay_'
    DOC_PLACEHOLDER = '...'
    STREAM_ID, FORMAT = 'stream_id', 'format'

    stats: StatsAggregator
    text_file: Path
    registry: CollectorRegistry
    metrics: dict[str, Gauge]
    stream_metrics: dict[str, Gauge]

    def __init__(self, stats: StatsAggregator, text_file: Optional[Path] = None) -> None:
        self.stats = stats
        text_file = text_file or settings.monitoring.prom_text_file
        assert isinstance(text_file, Path)
        self.text_file = text_file
        self._periodic: Periodic[[]] = Periodic(self.update_all_metrics)
        self._periodic.survive_errors = True
        self._periodic.post_stop_callbacks.append(self.delete_text_file)

        self.update_freq_sec: float = settings.monitoring.update_freq_sec
        self.registry = CollectorRegistry()
        self.metrics = {}
        self._add_metrics_from_model(SystemStats, exclude={'timestamp'})
        self.stream_metrics = {
            name: Gauge(
                name=f'{self.METRIC_PREFIX}stream_{name}',
                documentation=doc,
                labelnames=(self.STREAM_ID, self.FORMAT),
                registry=self.registry,
            )
            for name, doc in (
                ('clients', "Connected clients per stream"),
                ('bandwidth_kbps', "Upstream bandwidth per stream in kbit/s"),
                ('buffer_bytes', "Buffered bytes per stream"),
            )
        }
        self.process_collector = ProcessCollector(registry=self.registry)

    def _add_metrics_from_model(self, model_class: type[BaseModel], exclude: Container[str] = ()) -> None:
        """Adds a gauge for every field of the model."""
        for name, field in model_class.model_fields.items():
            if name in exclude or name in self.metrics:
                continue
            self.metrics[name] = Gauge(
                name=self.METRIC_PREFIX + name,
                documentation=field.description or self.DOC_PLACEHOLDER,
                registry=self.registry,
            )

    def delete_text_file(self) -> None:
        self.text_file.unlink(missing_ok=True)
        log.info(f"Deleted monitoring text file {self.text_file}")

    async def update_all_metrics(self) -> None:
        """Updates all gauges from the current stats and writes the text file."""
        system_stats = await self.stats.system_stats()
        for name, gauge in self.metrics.items():
            gauge.set(getattr(system_stats, name) or 0)
        # Streams come and go; only report those currently known.
        for gauge in self.stream_metrics.values():
            gauge.clear()
        for session in self.stats.registry.iter_sessions():
            if session.status is not SessionStatus.active:
                continue
            labels = (session.stream_id, session.source.format.value)
            self.stream_metrics['clients'].labels(*labels).set(session.client_count)
            self.stream_metrics['bandwidth_kbps'].labels(*labels).set(session.bandwidth_kbps)
            self.stream_metrics['buffer_bytes'].labels(*labels).set(session.buffer_size)
        write_to_textfile(str(self.text_file), self.registry)

    async def run(self) -> None:
        log.info(f"Started monitoring and writing to {self.text_file}")
        self._periodic(self.update_freq_sec, call_immediately=True)

    async def stop(self) -> None:
        await self._periodic.stop()
