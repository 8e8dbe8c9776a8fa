"""Agent rental settlement core."""
