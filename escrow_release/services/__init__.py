"""Release engine services: store, scanner, transactor, finalizer, dispatcher, scheduler, operator."""
