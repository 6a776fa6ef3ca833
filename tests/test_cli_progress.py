"""Tests for the deploy progress output."""
from io import StringIO

from rich.console import Console

from forgekit.cli_progress import ProgressReporter
from forgekit.core.pipeline import DeploymentPipeline, StepName


def make_reporter(verbose=False):
    output = StringIO()
    console = Console(file=output, width=200, color_system=None, emoji=False)
    return ProgressReporter(console, verbose=verbose), output


def drive(reporter, skip_build=False):
    pipeline = DeploymentPipeline(skip_build=skip_build)
    pipeline.subscribe(reporter)
    return pipeline


class TestProgressReporter:
    def test_started_and_completed_lines(self):
        reporter, output = make_reporter()
        pipeline = drive(reporter)
        pipeline.start(StepName.AUTHENTICATE)
        pipeline.complete(StepName.AUTHENTICATE, "Authentication")

        lines = output.getvalue().splitlines()
        assert lines[0] == "[1/6] 🔐 Authenticating..."
        assert lines[1] == "[1/6] ✅ Authentication completed"

    def test_failed_line(self):
        reporter, output = make_reporter()
        pipeline = drive(reporter, skip_build=True)
        pipeline.start(StepName.AUTHENTICATE)
        pipeline.fail(StepName.AUTHENTICATE, "Not logged in [401]")

        assert "[1/5] ❌ Authenticating failed: Not logged in [401]" in output.getvalue()
        assert reporter.failure_shown

    def test_verbose_shows_details_and_updates(self):
        reporter, output = make_reporter(verbose=True)
        pipeline = drive(reporter)
        pipeline.start(StepName.AUTHENTICATE)
        pipeline.update("Token valid until tomorrow")
        pipeline.log("debug detail")

        text = output.getvalue()
        assert "Verifying stored credentials and login status" in text
        assert "Token valid until tomorrow" in text
        assert "🔍 debug detail" in text

    def test_quiet_hides_verbose_output(self):
        reporter, output = make_reporter()
        pipeline = drive(reporter)
        pipeline.start(StepName.AUTHENTICATE)
        pipeline.update("hidden update")
        pipeline.log("hidden detail")
        pipeline.log("shown warning", level="warning")
        pipeline.log("shown info", level="info")

        text = output.getvalue()
        assert "hidden" not in text
        assert "shown warning" in text
        assert "shown info" in text

    def test_finished_line(self):
        reporter, output = make_reporter()
        pipeline = drive(reporter)
        for step in list(pipeline.steps):
            pipeline.start(step.name)
            pipeline.complete(step.name)
        pipeline.finish()

        assert "🎉 Deployment completed successfully in" in output.getvalue()
