"""Job handlers, one module per integration."""
