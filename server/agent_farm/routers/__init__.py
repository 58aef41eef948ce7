"""HTTP routers for the dashboard control server."""
