"""Issue publishing: the write command wrapped by the idempotency layer."""
