"""Service layer: persistence, upstream AI, delivery, and realtime."""
