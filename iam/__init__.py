"""Identity and access service."""
