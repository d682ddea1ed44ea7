"""Sessions: turn entry points, history budgeting and the context policy."""
