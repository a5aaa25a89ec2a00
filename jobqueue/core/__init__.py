"""Process-level wiring: logging and component bootstrap."""
