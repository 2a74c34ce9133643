"""Third-party catalogue lookups used to locate preview audio."""
