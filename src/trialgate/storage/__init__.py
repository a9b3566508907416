"""Server-side persistence for devices, registration keys and policy."""
