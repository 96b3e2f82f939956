"""Services deployed onto cluster nodes."""
