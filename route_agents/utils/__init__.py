"""Runtime utilities: structured logging, events, work queues, circuit breaking, error analysis."""
