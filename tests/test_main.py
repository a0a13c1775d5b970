"""
Tests for main.py (command-line runner).

main is imported inside each test so its data directory is created under the
temporary DATA_DIR rather than the working directory.
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest


def _main():
    import main
    return main


class TestParser:
    def test_scan_arguments(self):
        args = _main().build_parser().parse_args(
            ["scan", "tag.jpg", "front.jpg", "--hint", "PATAGONIA", "--hint", "STY25455", "--refinement", "stats"]
        )
        assert args.images == ["tag.jpg", "front.jpg"]
        assert args.hint == ["PATAGONIA", "STY25455"]
        assert args.refinement == "stats"
        assert args.user == "cli"

    def test_resume_stage_choices(self):
        parser = _main().build_parser()
        assert parser.parse_args(["resume", "abc", "research"]).stage == "research"
        with pytest.raises(SystemExit):
            parser.parse_args(["resume", "abc", "publishing"])

    def test_list_status_choices(self):
        parser = _main().build_parser()
        assert parser.parse_args(["list"]).status == "failed"
        with pytest.raises(SystemExit):
            parser.parse_args(["list", "--status", "stuck"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            _main().build_parser().parse_args([])


@pytest.mark.asyncio
class TestCommands:
    async def test_keys_set_then_list(self, capsys):
        main = _main()
        parser = main.build_parser()
        assert await main.run(parser.parse_args(["keys", "set", "serpapi_api_key", "serp-0123456789"])) == 0
        assert await main.run(parser.parse_args(["keys", "list"])) == 0
        out = capsys.readouterr().out
        assert "serpapi_api_key saved" in out
        assert "serp*******6789" in out
        assert "openai_api_key       not set" in out
        assert "Vision providers: none" in out
        assert "Search backends:  SerpAPI / Google + SerpAPI / eBay sold" in out

    async def test_key_change_drops_cached_clients(self):
        main = _main()
        import market_search
        from providers import manager

        parser = main.build_parser()
        manager._providers["openai"] = object()
        market_search._backends = [object()]
        await main.run(parser.parse_args(["keys", "set", "openai_api_key", "sk-new"]))
        assert manager._providers == {}
        assert market_search._backends is None

        manager._providers["openai"] = object()
        market_search._backends = [object()]
        await main.run(parser.parse_args(["keys", "delete", "openai_api_key"]))
        assert manager._providers == {}
        assert market_search._backends is None

    async def test_list_failed_scans(self, capsys):
        main = _main()
        import database as db
        from models import ScanStatus

        await db.init_db()
        failed = await db.create_scan("cli")
        pending = await db.create_scan("cli")
        await db.compare_and_set_status(
            failed, ScanStatus.UPLOADED, ScanStatus.FAILED,
            error_message="Couldn't read any of the photos.", error_kind="AllImagesFailed",
        )
        assert await main.run(main.build_parser().parse_args(["list"])) == 0
        out = capsys.readouterr().out
        assert failed in out
        assert pending not in out
        assert "AllImagesFailed: Couldn't read any of the photos." in out

    async def test_list_empty(self, capsys):
        main = _main()
        assert await main.run(main.build_parser().parse_args(["list", "--status", "completed"])) == 0
        assert capsys.readouterr().out.strip() == "No completed scans"

    async def test_cache_brands(self, capsys):
        main = _main()
        assert await main.run(main.build_parser().parse_args(["cache", "brands"])) == 0
        out = capsys.readouterr().out.splitlines()
        assert len(out) == 8
        assert "PATAGONIA" in out

    async def test_cache_stats_reports_decoder(self, capsys):
        main = _main()
        parser = main.build_parser()
        await main.run(parser.parse_args(["cache", "stats", "patagonia"]))
        stats = json.loads(capsys.readouterr().out)
        assert stats["brand"] == "PATAGONIA"
        assert stats["total_entries"] == 0
        assert stats["has_decoder"] is True
        await main.run(parser.parse_args(["cache", "stats", "Gap"]))
        assert json.loads(capsys.readouterr().out)["has_decoder"] is False

    async def test_show_missing_scan(self, capsys):
        main = _main()
        code = await main.run(main.build_parser().parse_args(["show", "does-not-exist"]))
        assert code == 1
        assert json.loads(capsys.readouterr().out) == {"error": "scan not found"}

    async def test_scan_runs_pipeline(self, capsys):
        main = _main()
        import database as db
        from models import ScanStatus

        async def fake_run(scan_id, images, hints, strategy):
            assert images == ["tag.jpg"]
            assert hints is None
            assert strategy.refinement_provider == "stats"
            await db.compare_and_set_status(scan_id, ScanStatus.UPLOADED, ScanStatus.FAILED, error_message="x")
            return await db.get_scan(scan_id)

        with patch("orchestrator.run_pipeline", AsyncMock(side_effect=fake_run)):
            code = await main.run(main.build_parser().parse_args(["scan", "tag.jpg", "--refinement", "stats"]))
        assert code == 1
        assert json.loads(capsys.readouterr().out)["status"] == "failed"
