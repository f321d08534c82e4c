"""Server package for DocScout: result cache, message protocol, worker and CLI."""
