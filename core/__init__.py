"""Order processing and payment settlement logic."""
