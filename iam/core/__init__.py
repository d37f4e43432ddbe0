"""Protocol and security primitives."""
