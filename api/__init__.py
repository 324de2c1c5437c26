"""HTTP API that queues tile jobs and serves their results."""
