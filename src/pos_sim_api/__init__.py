"""REST surface of the POS checkout simulator."""
