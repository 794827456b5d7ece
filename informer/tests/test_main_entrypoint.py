from __future__ import annotations

import json
import logging
import logging.handlers
import signal
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from informer.src.__main__ import (
    JSONFormatter,
    configure_logging,
    load_watch_config,
    main,
    run,
)
from informer.src.config import ConfigError, ControllerSettings, normalize
from informer.src.controller import ControllerStartError
from informer.src.models import GVR, Scope

WATCH_CONFIG = json.dumps(
    {
        "namespaces": [
            {"name_pattern": "team-a", "resources": {"v1/configmaps": {"name_pattern": "cfg-1"}}}
        ]
    }
)


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        output = JSONFormatter().format(self._make_record())
        parsed = json.loads(output)

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "thread" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/healthz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message


class TestConfigureLogging:
    def test_writes_json_lines_to_log_dir(self, tmp_path: Path) -> None:
        root_level = logging.root.level
        before = list(logging.root.handlers)
        listener = configure_logging("debug", str(tmp_path))
        try:
            logging.getLogger("informer.test").info("hello %s", "world")
        finally:
            listener.stop()
            for handler in list(logging.root.handlers):
                if handler not in before:
                    logging.root.removeHandler(handler)
            logging.root.setLevel(root_level)

        files = list(tmp_path.glob("informer-*.log"))
        assert len(files) == 1
        lines = [json.loads(line) for line in files[0].read_text().splitlines()]
        assert {"logger": "informer.test", "msg": "hello world"}.items() <= lines[-1].items()

    def test_installs_queue_handler_on_root(self) -> None:
        root_level = logging.root.level
        before = list(logging.root.handlers)
        listener = configure_logging("warning")
        try:
            added = [h for h in logging.root.handlers if h not in before]
            assert len(added) == 1
            assert isinstance(added[0], logging.handlers.QueueHandler)
            assert logging.root.level == logging.WARNING
        finally:
            listener.stop()
            for handler in list(logging.root.handlers):
                if handler not in before:
                    logging.root.removeHandler(handler)
            logging.root.setLevel(root_level)


class TestLoadWatchConfig:
    def test_reads_inline_json(self) -> None:
        raw = load_watch_config({"WATCH_CONFIG": WATCH_CONFIG})

        assert raw["namespaces"][0]["name_pattern"] == "team-a"

    def test_reads_json_file(self, tmp_path: Path) -> None:
        path = tmp_path / "watch.json"
        path.write_text(WATCH_CONFIG)

        assert "namespaces" in load_watch_config({"WATCH_CONFIG_FILE": str(path)})

    def test_reads_yaml_file(self, tmp_path: Path) -> None:
        path = tmp_path / "watch.yaml"
        path.write_text(
            "resources:\n"
            "  - gvr: v1/configmaps\n"
            "    scope: Namespaced\n"
            "    namespace_patterns:\n"
            "      - team-a\n"
            "      - team-b\n"
            "    label_selector: app=web\n"
            "  - gvr: v1/nodes\n"
            "    scope: Cluster\n"
        )

        raw = load_watch_config({"WATCH_CONFIG_FILE": str(path)})
        specs = normalize(raw)

        configmaps = specs[GVR(group="", version="v1", resource="configmaps")]
        assert configmaps[0].namespaces == ("team-a", "team-b")
        assert configmaps[0].label_selector == "app=web"
        assert specs[GVR(group="", version="v1", resource="nodes")][0].scope is Scope.CLUSTER

    def test_inline_yaml_takes_precedence_over_file(self, tmp_path: Path) -> None:
        path = tmp_path / "watch.yaml"
        path.write_text("resources: []\n")

        raw = load_watch_config(
            {"WATCH_CONFIG": "namespaces:\n  - name_pattern: team-a\n", "WATCH_CONFIG_FILE": str(path)}
        )

        assert raw == {"namespaces": [{"name_pattern": "team-a"}]}

    def test_missing_configuration_is_an_error(self) -> None:
        with pytest.raises(ConfigError, match="WATCH_CONFIG"):
            load_watch_config({})

    def test_invalid_yaml_is_an_error(self) -> None:
        with pytest.raises(ConfigError, match="not valid YAML"):
            load_watch_config({"WATCH_CONFIG": "{nope"})

    def test_non_mapping_is_an_error(self) -> None:
        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_watch_config({"WATCH_CONFIG": "[1, 2]"})

    def test_empty_file_is_an_error(self, tmp_path: Path) -> None:
        path = tmp_path / "watch.yaml"
        path.write_text("")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_watch_config({"WATCH_CONFIG_FILE": str(path)})

    def test_unreadable_file_is_an_error(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Cannot read"):
            load_watch_config({"WATCH_CONFIG_FILE": str(tmp_path / "missing.json")})


def _patched_run(
    mock_controller: MagicMock,
    settings: ControllerSettings | None = None,
) ->tuple[int, MagicMock, MagicMock, dict[int, Callable[..., Any]]]:
    handlers: dict[int, Callable[..., Any]] = {}

    def fake_signal(signum: int, handler: Callable[..., Any]) -> None:
        handlers[signum] = handler

    with (
        patch("informer.src.__main__.load_kube_configuration") as mock_kube,
        patch("informer.src.__main__.build_dynamic_client"),
        patch("informer.src.__main__.ResourceClient"),
        patch("informer.src.__main__.Controller", return_value=mock_controller) as mock_cls,
        patch("informer.src.__main__.start_health_server") as mock_health,
        patch("informer.src.__main__.signal.signal", side_effect=fake_signal),
    ):
        mock_health.return_value = MagicMock()
        mock_controller.start.side_effect = mock_controller.start.side_effect or (
            lambda: handlers[signal.SIGTERM](signal.SIGTERM, None)
        )
        code = run(settings or ControllerSettings(), env={"WATCH_CONFIG": WATCH_CONFIG})
        mock_kube.assert_called_once()
    return code, mock_cls, mock_health, handlers


class TestRun:
    def _controller(self) -> MagicMock:
        controller = MagicMock()
        controller.ready = threading.Event()
        controller.start.side_effect = None
        return controller

    def test_run_wires_controller_and_stops_on_signal(self) -> None:
        controller = self._controller()

        code, mock_cls, mock_health, handlers = _patched_run(controller)

        assert code == 0
        specs = mock_cls.call_args.kwargs["specs"]
        assert list(specs) == [GVR(group="", version="v1", resource="configmaps")]
        controller.add_event_handler.assert_called_once()
        controller.start.assert_called_once()
        controller.stop.assert_called_once()
        assert mock_health.call_args.kwargs["ready"] is controller.ready
        assert mock_health.call_args.kwargs["port"] == 8080
        mock_health.return_value.shutdown.assert_called_once()
        assert set(handlers) == {signal.SIGTERM, signal.SIGINT}

    def test_run_returns_error_code_when_start_fails(self) -> None:
        controller = self._controller()
        controller.start.side_effect = ControllerStartError("nothing synced")

        code, _, mock_health, _ = _patched_run(controller)

        assert code == 1
        controller.stop.assert_not_called()
        mock_health.return_value.shutdown.assert_called_once()

    def test_run_auto_shutdown_stops_without_signal(self) -> None:
        controller = self._controller()
        controller.start.side_effect = lambda: None

        started = time.monotonic()
        code, _, mock_health, _ = _patched_run(
            controller, settings=ControllerSettings(auto_shutdown_seconds=1)
        )

        assert code == 0
        assert time.monotonic() - started >= 0.9
        controller.stop.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()


class TestMain:
    def test_main_exits_with_run_code(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "warning")
        listener = MagicMock()

        with (
            patch("informer.src.__main__.configure_logging", return_value=listener),
            patch("informer.src.__main__.run", return_value=1),
            pytest.raises(SystemExit) as exc_info,
        ):
            main()

        assert exc_info.value.code == 1
        listener.stop.assert_called_once()

    def test_main_returns_normally_on_clean_shutdown(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        listener = MagicMock()

        with (
            patch("informer.src.__main__.configure_logging", return_value=listener) as mock_logging,
            patch("informer.src.__main__.run", return_value=0),
        ):
            main()

        assert mock_logging.call_args.args[0] == "info"
        listener.stop.assert_called_once()

    def test_main_exits_2_on_invalid_watch_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        listener = MagicMock()

        with (
            patch("informer.src.__main__.configure_logging", return_value=listener),
            patch("informer.src.__main__.run", side_effect=ConfigError("bad")),
            pytest.raises(SystemExit) as exc_info,
        ):
            main()

        assert exc_info.value.code == 2
        listener.stop.assert_called_once()

    def test_main_rejects_invalid_settings_before_logging(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("WORKER_COUNT", "zero")

        with (
            patch("informer.src.__main__.configure_logging") as mock_logging,
            pytest.raises(SystemExit, match="WORKER_COUNT"),
        ):
            main()

        mock_logging.assert_not_called()
