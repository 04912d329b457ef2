"""Plugin runtime and built-in plugins.

**base.py**        Plugin base class, manifest and settings schema, hook context.
**manager.py**     PluginManager: registration, enable/disable, hook dispatch,
                   persisted per-plugin settings.
**discovery.py**   Loads third-party plugins from $CHATWRAP_HOME/plugins/.
**templates.py**   Built-in ``/template`` prompt expansion.
**translator.py**  Built-in automatic translation of messages.
"""
