"""MLServer adapter: configuration, model layout and the adapter server."""