"""Structure-from-motion bridge: workspace export, COLMAP text import, alignment."""
