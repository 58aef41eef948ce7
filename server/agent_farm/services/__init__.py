"""Services: state store, port registry, process and session lifecycle."""
