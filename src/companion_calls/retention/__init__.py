"""Recording deletion retries and data export maintenance."""
