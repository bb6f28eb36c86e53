"""HTTP service exposing the Memoria engine."""
