"""
Backup and disaster recovery app.

This app provides:
- Full and oplog-based incremental MongoDB backups
- AES-256-GCM encrypted artifacts on S3-compatible or local storage
- A backup catalog with chain tracking and retention
- Automated restore testing and quarterly restore drills
- Health checks and operator alerts
"""
