"""Authentication, authorization guards and impersonation."""
