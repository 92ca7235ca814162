"""Injected capabilities for untrusted work: HTTP requests and user code."""

from flowcore.sandbox.code_runner import CodeRunner, NodeCodeRunner
from flowcore.sandbox.transport import HttpRequest, HttpResponse, HttpTransport, HttpxTransport

__all__ = [
    "CodeRunner",
    "HttpRequest",
    "HttpResponse",
    "HttpTransport",
    "HttpxTransport",
    "NodeCodeRunner",
]
