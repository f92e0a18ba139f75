"""scp-publisher — uploads build artifacts and console logs to SFTP sites."""

from __future__ import annotations

__version__ = "1.0.0"
