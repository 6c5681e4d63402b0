"""
Live transcription pipeline

Sample source -> window buffer -> backend manager -> line assembler,
coordinated by TranscriptionPipeline.
"""

# Lazy imports so capture helpers can be used without loading the engines
def __getattr__(name):
    if name in ("TranscriptionPipeline", "SessionSummary"):
        from . import session
        return getattr(session, name)
    elif name in ("TranscriptLine", "TranscriptSink", "LineAssembler"):
        from . import transcript
        return getattr(transcript, name)
    elif name in ("SampleSource", "SourceSpec"):
        from . import capture
        return getattr(capture, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    "TranscriptionPipeline",
    "SessionSummary",
    "TranscriptLine",
    "TranscriptSink",
    "LineAssembler",
    "SampleSource",
    "SourceSpec",
]
