"""Platform integration credential store."""
