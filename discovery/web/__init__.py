"""HTTP transport for the discovery chat."""
