"""HTTP and realtime adapters over the gateway runtime."""
