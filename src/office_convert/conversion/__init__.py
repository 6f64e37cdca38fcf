"""
Domain layer for document conversion.
Provides interfaces (gateways), the request-scoped conversion service and
the asynchronous job service, abstracting the engine subprocess, storage and
security so front-ends (HTTP, CLI) share the same core logic.
"""

from .interfaces import CancellationToken, ConversionEngine, EngineTask, ProcessOutcome, StorageGateway, SecurityGateway
from .jobs import JobRecord, JobService, JobStatus
from .service import ConversionArtifact, ConversionRequest, ConversionResult, ConversionService
