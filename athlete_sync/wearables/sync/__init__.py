"""Per-account sync runtime: engine, metrics store, remote bridge, OAuth channel."""
