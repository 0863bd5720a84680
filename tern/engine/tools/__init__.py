"""Tool definitions and the per-turn tool registry."""
