"""HTTP surface for StreamFlow."""
