import io
import json
import os
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import MagicMock, patch

from couponsync.cli import InlineChunkScheduler, build_arg_parser, main, run_inline
from couponsync.processor import InvocationResult, RunOutcome


class RunInlineTestCase(unittest.TestCase):
    def test_follows_continuations_until_done(self) -> None:
        scheduler = InlineChunkScheduler()
        pipeline = MagicMock()
        outcomes = iter([RunOutcome.CONTINUED, RunOutcome.CONTINUED, RunOutcome.COMPLETED])

        def run(*, manual: bool, run_id: str | None = None) -> InvocationResult:
            outcome = next(outcomes)
            if outcome is RunOutcome.CONTINUED:
                scheduler.schedule_next(run_id="run-1", delay_seconds=60.0, manual=manual)
            return InvocationResult(outcome, run_id="run-1")

        pipeline.processor.run.side_effect = run
        sleeps: list[float] = []

        result = run_inline(pipeline, scheduler, manual=True, sleep=sleeps.append)

        self.assertIs(result.outcome, RunOutcome.COMPLETED)
        self.assertEqual(sleeps, [60.0, 60.0])
        self.assertEqual(pipeline.processor.run.call_args.kwargs, {"manual": True, "run_id": "run-1"})
        self.assertIsNone(scheduler.pop())

    def test_stops_when_nothing_was_scheduled(self) -> None:
        pipeline = MagicMock()
        pipeline.processor.run.return_value = InvocationResult(RunOutcome.CONTINUED, run_id="run-1")

        result = run_inline(pipeline, InlineChunkScheduler(), manual=False, sleep=lambda _: None)

        self.assertIs(result.outcome, RunOutcome.CONTINUED)
        pipeline.processor.run.assert_called_once_with(manual=False)


class MainTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        root = Path(tmpdir.name)
        self.db_url = f"sqlite:///{root / 'sync.db'}"
        env = patch.dict(os.environ, {"COUPONSYNC_LOG_DIR": str(root / "logs")}, clear=True)
        env.start()
        self.addCleanup(env.stop)

    def _main(self, *args: str) -> tuple[int, str]:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = main(["--db-url", self.db_url, *args])
        return code, buffer.getvalue()

    def test_stop_then_status(self) -> None:
        code, output = self._main("stop")
        self.assertEqual(code, 0)
        self.assertIn("Stop requested", output)

        code, output = self._main("status", "--json")
        self.assertEqual(code, 0)
        payload = json.loads(output)
        self.assertTrue(payload["stop_requested"])
        self.assertFalse(payload["running"])
        self.assertEqual(payload["status"], "idle")
        self.assertEqual(payload["notifications"], [])

    def test_reset_clears_stop_request(self) -> None:
        self._main("stop")

        code, output = self._main("reset")
        self.assertEqual(code, 0)

        _, output = self._main("status")
        self.assertEqual(output.strip(), "idle")

    def test_maintenance_commands_print_json(self) -> None:
        _, output = self._main("health")
        self.assertFalse(json.loads(output)["released_stuck_lock"])

        _, output = self._main("purge-expired")
        self.assertEqual(json.loads(output), {"purged": 0})

        _, output = self._main("sweep-retries", "--limit", "5")
        self.assertEqual(json.loads(output), {"consumed": 0, "recovered": 0, "failed": 0, "expired": 0})

    def test_invalid_environment_is_a_usage_error(self) -> None:
        with patch.dict(os.environ, {"COUPONSYNC_BATCH_SIZE": "lots"}):
            with redirect_stdout(io.StringIO()), patch("sys.stderr", new_callable=io.StringIO):
                with self.assertRaises(SystemExit) as ctx:
                    main(["--db-url", self.db_url, "status"])
        self.assertEqual(ctx.exception.code, 2)

    def test_parser_requires_command(self) -> None:
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                build_arg_parser().parse_args([])


if __name__ == "__main__":
    unittest.main()
