"""HTTP API for operating migration runs."""
