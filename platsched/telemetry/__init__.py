"""Thread-safe cache of node metrics and telemetry policies with periodic metric refresh."""