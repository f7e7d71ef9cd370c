"""
Management command to take a full database backup.

Used by:
- Operators taking an ad hoc backup (for example before a deployment)
- External schedulers (cron) on hosts that do not run Celery beat
"""

from django.core.management.base import BaseCommand, CommandError

from apps.backups import services
from apps.backups.artifacts import Outcome, format_size
from apps.backups.conf import load_config
from apps.backups.exceptions import BackupError
from apps.backups.tasks import scheduled_database_backup


class Command(BaseCommand):
    help = "Take a full backup of the configured database"

    def add_arguments(self, parser):
        parser.add_argument(
            "--config-file",
            type=str,
            help="Backup config file (dotenv format) layered over the defaults",
        )
        parser.add_argument(
            "--async",
            action="store_true",
            help="Queue the backup on the Celery workers instead of running it here",
        )
        parser.add_argument(
            "--no-verify",
            action="store_true",
            help="Skip the verification of the new artifact",
        )

    def handle(self, *args, **options):
        if options["async"]:
            task = scheduled_database_backup.delay()
            self.stdout.write(self.style.SUCCESS(f"Backup task queued: {task.id}"))
            return

        try:
            overrides = {"verify_backup": "false"} if options["no_verify"] else {}
            config = load_config(options.get("config_file"), **overrides)

            self.stdout.write(f"Backing up {config.database.name}...")
            result = services.backup(config)

        except BackupError as e:
            raise CommandError(f"Backup failed at {e.step}: {e}")

        artifact = result.artifact
        self.stdout.write(f"  File: {artifact.path}")
        self.stdout.write(f"  Tier: {artifact.tier.value}")
        self.stdout.write(f"  Size: {format_size(artifact.size_bytes)}")
        self.stdout.write(f"  Encrypted: {'yes' if artifact.encrypted else 'no'}")
        self.stdout.write(f"  Verification: {artifact.verified.value}")
        if result.remote_uploaded is not None:
            self.stdout.write(f"  Offsite copy: {'uploaded' if result.remote_uploaded else 'FAILED'}")
        if result.prune is not None:
            self.stdout.write(f"  Expired backups removed: {result.prune.deleted_count}")

        if result.outcome == Outcome.WARNING:
            self.stdout.write(self.style.WARNING(f"Backup completed with warnings: {artifact.filename}"))
        else:
            self.stdout.write(self.style.SUCCESS(f"Backup completed: {artifact.filename}"))
