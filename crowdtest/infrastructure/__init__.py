"""Infrastructure layer: persistence, realtime fan-out, throttling, notifications."""
