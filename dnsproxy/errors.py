class DNSProxyError(Exception):
    pass


# raised before any listener starts; the process must not start
class ConfigurationError(DNSProxyError):
    pass


class InvalidEndpointURL(ConfigurationError):
    pass


# per-query failures, answered with SERVFAIL by the handler
class QueryError(DNSProxyError):
    pass


class MalformedInboundQuery(QueryError):
    pass


class EndpointUnresolvable(QueryError):
    pass


class TransportFailure(QueryError):
    pass


class DeadlineExceeded(TransportFailure):
    pass


class MalformedUpstreamResponse(QueryError):
    pass
