"""Support desk integration queue: mail, returns, calls and AI reply drafting."""
