"""API routes for Meridian nodes."""
