"""HTTP and Server-Sent Events surface over the session manager."""
