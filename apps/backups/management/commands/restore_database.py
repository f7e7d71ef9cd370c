"""
Management command to restore the database from a backup.

The restore runs as a session: the backup is verified, the live database
is snapshotted, the backup is staged into a scratch database, and only
then is the scratch database swapped into place. Pass --rollback to have a
failed swap restore the snapshot automatically.
"""

from django.core.management.base import BaseCommand, CommandError

from apps.backups import services
from apps.backups.artifacts import format_size, list_artifacts
from apps.backups.conf import load_config
from apps.backups.exceptions import BackupError, RestoreCancelled


class Command(BaseCommand):
    help = "Restore the database from a backup file or timestamp"

    def add_arguments(self, parser):
        source = parser.add_mutually_exclusive_group()
        source.add_argument("-f", "--file", type=str, help="Backup file to restore")
        source.add_argument(
            "-t",
            "--timestamp",
            type=str,
            help="Restore the backup with this timestamp (YYYYmmdd_HHMMSS), searched across all tiers",
        )
        source.add_argument("-l", "--list", action="store_true", help="List available backups and exit")
        parser.add_argument(
            "-d",
            "--database",
            type=str,
            help="Database to replace (defaults to the configured database)",
        )
        parser.add_argument(
            "-r",
            "--rollback",
            action="store_true",
            help="Restore the pre-restore snapshot automatically if the swap fails",
        )
        parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
        parser.add_argument(
            "--skip-snapshot",
            action="store_true",
            help="Do not snapshot the live database first (required when it does not exist)",
        )
        parser.add_argument("--config-file", type=str, help="Backup config file (dotenv format)")

    def _list(self, config):
        for tier, artifacts in list_artifacts(config.backup_root).items():
            self.stdout.write(self.style.MIGRATE_HEADING(f"{tier.value.capitalize()}:"))
            if not artifacts:
                self.stdout.write("  (none)")
            for artifact in reversed(artifacts):
                self.stdout.write(f"  {artifact.id}  {format_size(artifact.size_bytes):>10}  {artifact.filename}")

    def _confirm(self, session):
        self.stdout.write(self.style.WARNING("=" * 80))
        self.stdout.write(self.style.WARNING(f"About to REPLACE database '{session.production_database}'"))
        self.stdout.write(f"  Backup: {session.target_artifact}")
        self.stdout.write(f"  Pre-restore snapshot: {session.pre_restore_snapshot or 'SKIPPED'}")
        self.stdout.write(self.style.WARNING("=" * 80))
        answer = input("Type 'yes' to continue: ")
        return answer.strip().lower() == "yes"

    def handle(self, *args, **options):
        try:
            config = load_config(options.get("config_file"))
        except BackupError as e:
            raise CommandError(f"Configuration error: {e}")

        if options["list"]:
            self._list(config)
            return

        reference = options.get("file") or options.get("timestamp")
        if not reference:
            raise CommandError("Specify a backup with --file or --timestamp (or use --list)")

        try:
            session = services.restore(
                reference,
                config=config,
                confirm=self._confirm,
                rollback_enabled=options["rollback"],
                skip_confirmation=options["yes"],
                target_database=options.get("database"),
                skip_snapshot=options["skip_snapshot"],
            )
        except RestoreCancelled as e:
            raise CommandError(str(e))
        except BackupError as e:
            session = getattr(e, "session", None)
            if session is not None:
                self.stderr.write(f"Restore session {session.id} ended in state '{session.status.value}'")
                if session.pre_restore_snapshot:
                    self.stderr.write(f"Pre-restore snapshot: {session.pre_restore_snapshot}")
            raise CommandError(f"Restore failed: {e}")

        self.stdout.write(f"  Session: {session.id}")
        self.stdout.write(f"  Restored from: {session.target_artifact}")
        self.stdout.write(f"  Pre-restore snapshot: {session.pre_restore_snapshot or 'skipped'}")
        self.stdout.write(self.style.SUCCESS(f"Database {session.production_database} restored successfully"))
