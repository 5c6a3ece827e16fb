"""Remote document service contract and its HTTP implementation."""
