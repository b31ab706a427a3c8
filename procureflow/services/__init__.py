"""Service layer for the approval workflow engine."""
