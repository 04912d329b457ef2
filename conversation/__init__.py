"""Conversation state: sessions, threads and messages.

**models.py**   Frozen pydantic records (Message, Thread, Session, Settings).
**storage.py**  KeyValueStore protocol, MemoryStore and ChatStorage.
**store.py**    ConversationStore: the command layer that ties user actions
                to plugins, the model client and persistence.
**errors.py**   StateError family and PersistenceError.
"""
