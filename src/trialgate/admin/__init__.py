"""Administrative tooling for the license server."""
