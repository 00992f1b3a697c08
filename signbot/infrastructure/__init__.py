"""Infrastructure layer: durable store backends."""
