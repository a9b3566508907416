"""HTTP surface of the license server."""
