"""Real-time message delivery and fan-out for chat channels."""
