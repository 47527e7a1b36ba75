"""HTTP API for settlement previews, release and admin actions."""
