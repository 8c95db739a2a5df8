"""stepform test suite."""
