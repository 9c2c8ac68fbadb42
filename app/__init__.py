"""HTTP layer for the EHR webhook service."""
