"""
PostgreSQL backup and disaster recovery.

This app provides:
- Scheduled full dumps with parallel workers, gzip compression and optional encryption
- Tiered retention (daily, weekly, monthly) with safe pruning
- Integrity verification, including test restores into a throwaway database
- Restore sessions that stage, swap and roll back without touching production early
- Offsite copies to S3 and run notifications (email, Slack, Discord, webhook)
"""
