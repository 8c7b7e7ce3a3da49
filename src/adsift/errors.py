"""Error taxonomy shared by the classification core and both front ends.

Brief:
  Malformed input (domains, DNS packets, HTTP request heads) is never blocked
  and never forwarded; upstream failures drive DNS failover and proxy 502s;
  filter-source failures are logged and tolerated.
"""


class AdsiftError(Exception):
    """Base class for all adsift errors."""


class InvalidInput(AdsiftError, ValueError):
    """Brief: Input could not be parsed into something classifiable.

    Inputs:
      - message: description of what was malformed

    Outputs:
      - Exception instance
    """


class InvalidDomain(InvalidInput):
    """A domain was empty, had no dot, or contained an unusable label."""


class InvalidDnsQuery(InvalidInput):
    """A DNS datagram was too short or its question name was truncated."""


class InvalidHttpRequest(InvalidInput):
    """An HTTP request head had no usable request line or target."""


class UpstreamUnavailable(AdsiftError):
    """Brief: An upstream resolver or origin server could not be reached.

    Inputs:
      - message: description including the upstream address

    Outputs:
      - Exception instance
    """


class FilterSourceUnavailable(AdsiftError):
    """A remote or local filter/hosts list could not be loaded."""
