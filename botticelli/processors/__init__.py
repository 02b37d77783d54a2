"""Post-act processors: extract structured data from responses and persist it.

The executor hands every finished act to a ProcessorRegistry. Each processor
decides whether the act is relevant (should_process) and then does its work
(process). Failures are isolated per processor and reported, never raised
into the run.
"""

# Re-export all public symbols so `from botticelli.processors import ...` works.

from .base import (  # noqa: F401
    ActProcessor,
    MatchingProcessor,
    ProcessorContext,
    ProcessorRegistry,
)

from .extraction import (  # noqa: F401
    ExtractionError,
    extract_items,
    extract_json,
    parse_json,
)

from .content import (  # noqa: F401
    ContentGenerationProcessor,
    RowRejectedError,
    TableExtractionProcessor,
)
