"""Tests for the billing CLI."""

from uuid import uuid4

import pytest

from billing_engine.cli import BillingCli


@pytest.fixture
def cli():
    return BillingCli()


class TestBillingCli:
    """Test argument parsing."""

    def test_run_arguments(self, cli):
        """Run options map onto a billing request."""
        vendor_id = uuid4()
        args = cli.parser.parse_args(
            ["run", "--vendor-id", str(vendor_id), "--period", "2026-09", "--force", "--preview"]
        )

        request = cli.build_request(args)

        assert request.vendor_id == vendor_id
        assert request.period == "2026-09"
        assert request.force is True
        assert request.preview is True
        assert request.dry_run is False

    def test_defaults(self, cli):
        """Without options the run targets all vendors for the previous month."""
        request = cli.build_request(cli.parser.parse_args(["run"]))

        assert request.vendor_id is None
        assert request.period is None
        assert request.force is False

    def test_invalid_period_rejected(self, cli):
        """Malformed periods are argument errors."""
        with pytest.raises(SystemExit):
            cli.parser.parse_args(["run", "--period", "2026-13"])

    def test_dry_run_and_preview_are_exclusive(self, cli):
        """A run cannot be both a dry run and a preview."""
        with pytest.raises(SystemExit):
            cli.parser.parse_args(["run", "--dry-run", "--preview"])

    def test_no_command_prints_help(self, cli, capsys):
        """Missing command returns non-zero."""
        assert cli.run([]) == 1
        assert "usage" in capsys.readouterr().out
