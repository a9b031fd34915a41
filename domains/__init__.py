"""Domain modules for the EVS balance bot."""
