"""Personal expense tracking backend."""
