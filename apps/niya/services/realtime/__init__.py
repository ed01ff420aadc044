"""In-process socket connections, rooms, and the protocol gateway."""
