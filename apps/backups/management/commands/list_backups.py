"""
Management command to list backups per tier.
"""

from datetime import datetime

from django.core.management.base import BaseCommand, CommandError

from apps.backups import services
from apps.backups.artifacts import format_size, list_pre_restore_snapshots
from apps.backups.conf import load_config
from apps.backups.exceptions import BackupError


class Command(BaseCommand):
    help = "List available backups grouped by tier"

    def add_arguments(self, parser):
        parser.add_argument("--config-file", type=str, help="Backup config file (dotenv format)")

    def handle(self, *args, **options):
        try:
            config = load_config(options.get("config_file"))
        except BackupError as e:
            raise CommandError(str(e))

        now = datetime.now()
        grouped = services.list_backups(config)
        grouped_items = [(tier.value, artifacts) for tier, artifacts in grouped.items()]
        grouped_items.append(("pre-restore snapshots", list_pre_restore_snapshots(config.backup_root)))

        total = 0
        for label, artifacts in grouped_items:
            self.stdout.write(self.style.MIGRATE_HEADING(f"{label.capitalize()} ({len(artifacts)})"))
            if not artifacts:
                self.stdout.write("  (none)")
                continue

            for artifact in reversed(artifacts):
                age_days = artifact.age(now).days
                self.stdout.write(
                    f"  {artifact.id}  {format_size(artifact.size_bytes):>10}  "
                    f"{age_days:>3}d  {artifact.filename}"
                )
            total += len(artifacts)

        self.stdout.write(f"\n{total} backup(s) under {config.backup_root}")
