"""Built-in listers that enumerate documents for the adaptor."""
