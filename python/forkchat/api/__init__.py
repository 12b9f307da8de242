"""HTTP API: dependencies and route groups."""
