"""Super admin user management."""
