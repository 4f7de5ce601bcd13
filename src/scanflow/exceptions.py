# src/scanflow/exceptions.py
class ScanflowError(Exception):
    """Base exception for the scanflow library."""
    pass

class RecognitionError(ScanflowError):
    """Raised when the recognition capability does not return usable text."""
    pass

class TransportError(RecognitionError):
    """Network or HTTP failure while talking to the recognition capability."""
    pass

class RecognitionTimeoutError(RecognitionError):
    """The per-request time bound elapsed before a response arrived."""
    pass

class EncodeError(ScanflowError):
    """An image derivative or enhancement step failed to produce output."""
    pass

class ValidationError(ScanflowError, ValueError):
    """Caller supplied no pages, no tasks, or out-of-range options."""
    pass
