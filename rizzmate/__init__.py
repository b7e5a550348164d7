"""RizzMate: usage-metered, multi-modal dating-assistant conversation API."""
