"""hedeploy utilities."""
