"""Unit tests for the command-line entrypoint."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
import structlog

from contentmirror import cli
from contentmirror.config import LoggingSettings, Settings
from contentmirror.errors import ErrorCode
from contentmirror.mirror import ContentMirror
from tests.helpers import block, raw_page, raw_subpage

if TYPE_CHECKING:
    from collections.abc import Iterator

    from contentmirror.cache import FetchCache
    from tests.helpers import FakeContentApi


@pytest.fixture()
def reset_structlog(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    # main() caches its logger on first use; give each test a fresh proxy
    monkeypatch.setattr(cli, "log", structlog.get_logger())
    yield
    structlog.reset_defaults()


def _seed(fake_api: FakeContentApi) -> None:
    fake_api.collections["db"] = {"id": "db", "title": [{"plain_text": "Docs"}]}
    fake_api.set_query(
        "db",
        [
            raw_page("guide", "Guide", slug="guide"),
            raw_page("setup", "Setup", slug="setup", parent_ids=("guide",)),
        ],
    )
    fake_api.set_children("setup", [block("faq", "child_page", title="FAQ")])
    fake_api.nodes["faq"] = raw_subpage("faq")


class TestSetupLogging:
    @pytest.mark.usefixtures("reset_structlog")
    def test_json_output_goes_to_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        cli.setup_logging(Settings(logging=LoggingSettings(format="json")))

        structlog.get_logger().info("sample_event", answer=42)

        captured = capsys.readouterr()
        assert captured.out == ""
        record = json.loads(captured.err.strip().splitlines()[-1])
        assert record["event"] == "sample_event"
        assert record["answer"] == 42
        assert record["level"] == "info"

    @pytest.mark.usefixtures("reset_structlog")
    def test_level_filters_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        cli.setup_logging(Settings(logging=LoggingSettings(level="WARNING", format="json")))

        structlog.get_logger().info("hidden_event")

        assert "hidden_event" not in capsys.readouterr().err


class TestBuildPlan:
    async def test_flat_plan(self, fake_api: FakeContentApi) -> None:
        _seed(fake_api)
        mirror = ContentMirror(fake_api, "db")

        plan = await cli.build_plan(mirror)

        assert plan["collection"]["title"] == "Docs"
        assert {page["path"] for page in plan["pages"]} == {"guide.md", "setup.md"}
        assert plan["diagnostics"] == []
        assert "cache" not in plan

    async def test_hierarchy_plan_with_cache_stats(
        self, cache: FetchCache, fake_api: FakeContentApi
    ) -> None:
        _seed(fake_api)
        mirror = ContentMirror(cache, "db", hierarchy_mode="both")

        plan = await cli.build_plan(mirror)

        paths = {page["id"]: page["path"] for page in plan["pages"]}
        assert paths == {
            "guide": "guide/index.md",
            "setup": "guide/setup/index.md",
            "faq": "guide/setup/faq.md",
        }
        assert plan["cache"]["misses"]["list_children"] >= 1


class TestMain:
    @pytest.mark.usefixtures("reset_structlog")
    def test_configuration_error_exits_with_envelope(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.delenv("CONTENTMIRROR__SOURCE__COLLECTION_ID", raising=False)
        monkeypatch.setenv("CONTENTMIRROR__API__TOKEN", "secret_test")

        with pytest.raises(SystemExit) as exc_info:
            cli.main()

        assert exc_info.value.code == 1
        envelope = json.loads(capsys.readouterr().out)
        assert envelope["error"]["code"] == ErrorCode.MISSING_CONFIGURATION

    @pytest.mark.usefixtures("reset_structlog")
    def test_prints_plan(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        async def fake_run(settings: Settings) -> dict:
            assert settings.source.collection_id == "db-1"
            return {"collection": {"id": "db-1"}, "pages": [], "diagnostics": []}

        monkeypatch.setenv("CONTENTMIRROR__SOURCE__COLLECTION_ID", "db-1")
        monkeypatch.setattr(cli, "_run", fake_run)

        cli.main()

        assert json.loads(capsys.readouterr().out)["collection"]["id"] == "db-1"

