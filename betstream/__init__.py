"""Live sports betting backend: domain records, Redis caches, MongoDB repositories, message publishing and consuming, bet, fraud and odds processors, an HTTP API, metrics, demo seeding and a game-event simulator."""

__version__ = "0.1.0"