"""Provider webhook endpoints."""
