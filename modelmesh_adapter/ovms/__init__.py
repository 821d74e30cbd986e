"""OpenVINO Model Server adapter: configuration, model layout, model manager and the adapter server."""