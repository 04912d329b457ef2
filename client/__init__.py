"""Model API client -- everything that talks HTTP to the completion service.

Module Overview
---------------
**model_client.py**
    ``ModelClient``: request/response and streaming calls against the
    Messages API, with per-attempt timeouts, linear-backoff retries for
    network failures and 5xx responses, and error-body mapping.

**sse.py**
    ``SSEDecoder``: incremental server-sent-events decoding. Tolerates frames
    split across network reads and skips (but counts) malformed frames.

**errors.py**
    ``ApiError`` and its transport-level subclasses ``NetworkError`` and
    ``StreamError``.

Design
------
The client holds static configuration only. It is created once by the
composition root (``chat_app``) and passed to the conversation store and to
plugins that need the model, never reached through a module-level singleton.
"""
