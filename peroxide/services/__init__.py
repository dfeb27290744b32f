"""Protocol adapters for the scanning backend's HTTP and SSE endpoints."""
