"""Command line tool for kubit."""
