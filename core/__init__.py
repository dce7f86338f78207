"""Core services: store clients, provider adapters, the job queue and lifecycle wiring."""
