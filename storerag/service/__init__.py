"""HTTP service exposing lifecycle operations and query routing."""
