"""Pipeline drain scheduler."""
