"""
n8nctl: maintenance toolkit for a self-hosted n8n server.

Health polling, supervisor recovery (systemd, PM2, Docker), complete
backups with retention, restores, crontab management and host diagnostics.
"""

APP_NAME: str = "n8nctl"
VERSION: str = "1.0.0"

__version__ = VERSION
