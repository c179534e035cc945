"""Domain modules for the HLS pipeline."""
