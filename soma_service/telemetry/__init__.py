"""OpenTelemetry helpers shared by the services.

A YAML file describes the SDK (resource, exporters, sampler, propagators);
``client.new_client`` builds it and returns a tracer, meter and a logger
whose records carry the active trace and span ids.
"""
