"""
Metadata key layout.

    upload:{sid}                            session record
    upload:{sid}:count                      confirmed chunk counter
    upload:{sid}:chunk:{file}:{index}       chunk record
"""

from urllib.parse import quote


def session_key(session_id: str) -> str:
    return f"upload:{session_id}"


def counter_key(session_id: str) -> str:
    return f"upload:{session_id}:count"


def file_chunk_prefix(session_id: str, file_name: str) -> str:
    # File names may contain ':' or glob characters; quote them out of the key syntax
    return f"upload:{session_id}:chunk:{quote(file_name, safe='')}:"


def session_chunk_prefix(session_id: str) -> str:
    return f"upload:{session_id}:chunk:"


def chunk_key(session_id: str, file_name: str, chunk_index: int) -> str:
    return f"{file_chunk_prefix(session_id, file_name)}{chunk_index}"
