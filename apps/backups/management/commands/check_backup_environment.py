"""
Management command to show the effective backup configuration and run the
preflight checks without taking a backup.
"""

from django.core.management.base import BaseCommand, CommandError

from apps.backups.artifacts import format_size
from apps.backups.conf import describe_config, load_config, validate_environment
from apps.backups.exceptions import BackupError


class Command(BaseCommand):
    help = "Show the backup configuration and validate the environment"

    def add_arguments(self, parser):
        parser.add_argument("--config-file", type=str, help="Backup config file (dotenv format)")

    def handle(self, *args, **options):
        try:
            config = load_config(options.get("config_file"))
        except BackupError as e:
            raise CommandError(f"Configuration error: {e}")

        self.stdout.write("=" * 80)
        self.stdout.write("Backup configuration")
        self.stdout.write("=" * 80)
        for key, value in describe_config(config).items():
            self.stdout.write(f"  {key:<18} {value}")

        try:
            report = validate_environment(config)
        except BackupError as e:
            raise CommandError(f"Environment check failed: {e}")

        self.stdout.write("")
        for tool, path in report.tools.items():
            self.stdout.write(f"  {tool:<18} {path}")
        self.stdout.write(f"  {'free space':<18} {format_size(report.free_bytes)}")

        for warning in report.warnings:
            self.stdout.write(self.style.WARNING(f"  ! {warning}"))

        self.stdout.write(self.style.SUCCESS("Environment OK"))
