"""Server - configuration, background workers and the operator API."""
