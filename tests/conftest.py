"""
Shared fixtures: a controllable clock, throwaway databases and a pipeline
wired against them.
"""

import os

import pytest

from helpers import FakeClock, at, event_payload
from usage_ledger.config.loader import AggregationConfig, PipelineConfig
from usage_ledger.core.alerts import RecordingAlertSink
from usage_ledger.pipeline import MeteringPipeline
from usage_ledger.storage.copies import InMemoryCopy, SqliteCopy


@pytest.fixture
def db_path(tmp_path):
    return os.path.join(str(tmp_path), "ledger.db")


@pytest.fixture
def clock():
    return FakeClock(at(10, 30))


@pytest.fixture
def config():
    """Default config with the grace period switched off."""
    return PipelineConfig.default(
        aggregation=AggregationConfig(grace_period_seconds=0, retry_backoff_seconds=0),
    )


@pytest.fixture
def archive(tmp_path):
    return SqliteCopy(os.path.join(str(tmp_path), "archive.db"))


@pytest.fixture
def analytics():
    return InMemoryCopy()


@pytest.fixture
def pipeline(config, db_path, clock, archive, analytics):
    return MeteringPipeline(
        config,
        db_path=db_path,
        copies=[archive, analytics],
        alerts=RecordingAlertSink(),
        clock=clock,
    )


@pytest.fixture
def t1_bucket(pipeline, clock):
    """T1 sends 1, 2, 2 api calls in the 10:00 bucket, one retried identically."""
    pipeline.ingest(event_payload("k1", 1, at(10, 5)))
    pipeline.ingest(event_payload("k2", 2, at(10, 10)))
    pipeline.ingest(event_payload("k3", 2, at(10, 20)))
    pipeline.ingest(event_payload("k2", 2, at(10, 10)))
    return pipeline
