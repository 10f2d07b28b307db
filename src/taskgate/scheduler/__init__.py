"""Task scheduler: persistent store, budgets, runner and the poll loop."""
