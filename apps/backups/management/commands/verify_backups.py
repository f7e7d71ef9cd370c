"""
Management command to audit backups.

Exit status is non-zero when any artifact fails verification. Warnings
(for example an old artifact) are reported but do not fail the command.
"""

from django.core.management.base import BaseCommand, CommandError

from apps.backups import services
from apps.backups.artifacts import CheckResult, Outcome, VerificationStatus
from apps.backups.conf import load_config
from apps.backups.exceptions import BackupError

STATUS_STYLES = {
    VerificationStatus.PASSED: "SUCCESS",
    VerificationStatus.WARNING: "WARNING",
    VerificationStatus.FAILED: "ERROR",
}


class Command(BaseCommand):
    help = "Verify the integrity of backups and write a verification report"

    def add_arguments(self, parser):
        target = parser.add_mutually_exclusive_group()
        target.add_argument("-f", "--file", type=str, help="Verify a single backup file")
        target.add_argument("--all", action="store_true", help="Verify every backup in every tier")
        target.add_argument(
            "--latest",
            action="store_true",
            help="Verify the newest backup of each tier (default)",
        )
        parser.add_argument(
            "--test-restore",
            action="store_true",
            help="Also restore each backup into a throwaway database",
        )
        parser.add_argument("-q", "--quiet", action="store_true", help="Only print the summary")
        parser.add_argument("--config-file", type=str, help="Backup config file (dotenv format)")

    def handle(self, *args, **options):
        if options.get("file"):
            target = "one"
        elif options["all"]:
            target = "all"
        else:
            target = "latest"

        try:
            config = load_config(options.get("config_file"))
            run = services.verify(
                target=target,
                path=options.get("file"),
                test_restore=options["test_restore"],
                config=config,
            )
        except BackupError as e:
            raise CommandError(f"Verification failed: {e}")

        if not options["quiet"]:
            for report in run.reports:
                style = getattr(self.style, STATUS_STYLES[report.overall_status])
                self.stdout.write(style(f"{report.overall_status.value.upper():<8} {report.artifact.path}"))
                for check in report.checks:
                    if check.result != CheckResult.SKIPPED or options["verbosity"] > 1:
                        self.stdout.write(f"    {check.name:<13} {check.result.value:<8} {check.detail}")

        counts = run.counts
        self.stdout.write(
            f"{len(run.reports)} verified: {counts['passed']} passed, "
            f"{counts['warning']} warning, {counts['failed']} failed"
        )
        self.stdout.write(f"Report: {run.report_path}")

        if run.outcome == Outcome.FAILURE:
            if not run.reports:
                raise CommandError(f"No backups found under {config.backup_root}")
            raise CommandError(f"{counts['failed']} backup(s) failed verification")
        if run.outcome == Outcome.WARNING:
            self.stdout.write(self.style.WARNING("Verification completed with warnings"))
        else:
            self.stdout.write(self.style.SUCCESS("All backups verified"))
