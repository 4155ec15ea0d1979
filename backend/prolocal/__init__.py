"""ProLocal subscription, billing and listing-quota service."""
