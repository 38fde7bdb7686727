"""Tests for structured logging and metrics helpers."""

import json
import logging

import pytest

from observability.logging import ColoredFormatter, JSONFormatter, get_structured_logger
from observability.prometheus_metrics import normalize_endpoint


def make_record(message="Indexing finished", **extra):
    record = logging.LogRecord("pipelines.indexer", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:

    def test_json_formatter_includes_context_fields(self):
        output = json.loads(JSONFormatter().format(make_record(ctx_project_id="p1", ctx_embedded=3)))
        assert output["message"] == "Indexing finished"
        assert output["service"] == "repobrief"
        assert output["context"] == {"project_id": "p1", "embedded": 3}

    def test_colored_formatter_appends_context(self):
        line = ColoredFormatter(use_colors=False).format(make_record(ctx_project_id="p1"))
        assert line.endswith("| project_id=p1")
        assert "\033[" not in line


class TestStructuredLogger:

    def test_bound_context_reaches_records(self, caplog):
        log = get_structured_logger("tests.structured", project_id="p1").bind(run="r1")

        with caplog.at_level(logging.INFO, logger="tests.structured"):
            log.info("started", files=4)

        record = caplog.records[-1]
        assert record.ctx_project_id == "p1"
        assert record.ctx_run == "r1"
        assert record.ctx_files == 4


class TestEndpointNormalization:

    @pytest.mark.parametrize("path,expected", [
        ("/projects/3f2a1c9e-0d4b-4e7a-9b1c-2d3e4f5a6b7c/commits", "/projects/{uuid}/commits"),
        ("/jobs/42", "/jobs/{id}"),
        ("/health", "/health"),
    ])
    def test_ids_are_collapsed(self, path, expected):
        assert normalize_endpoint(path) == expected
