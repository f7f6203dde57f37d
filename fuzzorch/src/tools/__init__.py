from .process_runner import ProcessResult, SubprocessRunner
from .crash_deduplicator import CrashDeduplicator, CrashSignature, EarlyStopPolicy, signature_oracle
from .exception_transport import TargetFailure, persist, recover
from .stats_extractor import extract, summarize

__all__ = [
    "CrashDeduplicator",
    "CrashSignature",
    "EarlyStopPolicy",
    "extract",
    "persist",
    "ProcessResult",
    "recover",
    "signature_oracle",
    "SubprocessRunner",
    "summarize",
    "TargetFailure",
]
