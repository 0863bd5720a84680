"""Model Context Protocol client: configuration, transports and connection manager."""
