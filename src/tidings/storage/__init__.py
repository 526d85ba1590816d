"""Repository functions for the pipeline tables."""
