"""Pure helpers shared by services: scoring, telemetry and caching."""
