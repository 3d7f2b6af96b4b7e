"""Application entrypoints for feedcast."""
