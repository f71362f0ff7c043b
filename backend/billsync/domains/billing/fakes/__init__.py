"""In-memory fakes for the billing domain."""
