"""Command groups registered on the pvendor CLI."""
