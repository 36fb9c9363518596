"""Protocol recognition from opening bytes: PostgreSQL matching and OpenVPN client reset messages."""

__version__ = "0.1.0"