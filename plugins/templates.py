"""Prompt templates plugin.

Expands ``/template <id> [key=value ...]`` into a full prompt before it is
sent. Templates use two constructs:

  {{name}}                 -- replaced by the variable's value, its declared
                              default, or an empty string
  {{#if name}}...{{/if}}   -- kept only when the variable is truthy

Built-in templates are a static catalog. User-added templates are stored
separately under their own key and can never shadow or remove a built-in.
"""

import logging
import re
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from chatwrap_constants import CUSTOM_TEMPLATES_KEY
from conversation.storage import KeyValueStore
from plugins.base import Plugin, PluginContext, PluginManifest, SelectOption

logger = logging.getLogger(__name__)

COMMAND_RE = re.compile(r"^/template\s+([\w-]+)(?:\s+(.+))?$", re.DOTALL)
PARAM_SPLIT_RE = re.compile(r"\s+(?=\w+=)")
CONDITIONAL_RE = re.compile(r"\{\{#if\s+(\w+)\}\}(.*?)\{\{/if\}\}", re.DOTALL)
PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

_FALSY_STRINGS = {"", "false", "no", "0", "off"}


class PromptVariable(BaseModel):
    name: str
    description: str = ""
    type: Literal["text", "number", "select", "multiline"] = "text"
    required: bool = False
    default: Any = None
    options: List[SelectOption] = Field(default_factory=list)


class PromptTemplate(BaseModel):
    id: str
    name: str
    description: str = ""
    category: str
    template: str
    variables: List[PromptVariable] = Field(default_factory=list)
    language: str = "en"
    tags: List[str] = Field(default_factory=list)


_YES_NO = [SelectOption(label="Yes", value=True), SelectOption(label="No", value=False)]

BUILTIN_TEMPLATES = (
    PromptTemplate(
        id="code-review",
        name="Code Review",
        description="Review code for best practices and improvements",
        category="Development",
        template=(
            "Please review the following {{language}} code:\n\n"
            "```{{language}}\n{{code}}\n```\n\n"
            "Review it for:\n"
            "- Code quality and readability\n"
            "- Performance improvements\n"
            "- Security vulnerabilities\n"
            "- Adherence to best practices\n"
            "{{#if includeRefactoring}}- Refactoring suggestions\n{{/if}}"
            "\n{{#if specificConcerns}}Pay particular attention to:\n{{specificConcerns}}\n{{/if}}"
        ),
        variables=[
            PromptVariable(
                name="language",
                description="Programming language",
                type="select",
                required=True,
                options=[
                    SelectOption(label="JavaScript", value="javascript"),
                    SelectOption(label="TypeScript", value="typescript"),
                    SelectOption(label="Python", value="python"),
                    SelectOption(label="Java", value="java"),
                    SelectOption(label="C++", value="cpp"),
                ],
            ),
            PromptVariable(name="code", description="Code to review", type="multiline", required=True),
            PromptVariable(
                name="includeRefactoring",
                description="Include refactoring suggestions",
                type="select",
                default=True,
                options=_YES_NO,
            ),
            PromptVariable(name="specificConcerns", description="Specific areas of concern", type="multiline"),
        ],
        tags=["development", "code", "review"],
    ),
    PromptTemplate(
        id="explain-concept",
        name="Concept Explanation",
        description="Explain complex concepts in simple terms",
        category="Education",
        template=(
            "Explain {{concept}} at a {{level}} level.\n\n"
            "{{#if includeExamples}}Use real-world examples.\n{{/if}}"
            "{{#if includeAnalogy}}Use an easy-to-follow analogy.\n{{/if}}"
            "{{#if specificAspects}}\nFocus especially on:\n{{specificAspects}}\n{{/if}}"
        ),
        variables=[
            PromptVariable(name="concept", description="Concept to explain", required=True),
            PromptVariable(
                name="level",
                description="Explanation level",
                type="select",
                required=True,
                default="intermediate",
                options=[
                    SelectOption(label="Beginner", value="beginner"),
                    SelectOption(label="Intermediate", value="intermediate"),
                    SelectOption(label="Expert", value="expert"),
                ],
            ),
            PromptVariable(
                name="includeExamples", description="Include examples", type="select", default=True, options=_YES_NO
            ),
            PromptVariable(
                name="includeAnalogy", description="Include analogies", type="select", default=False, options=_YES_NO
            ),
            PromptVariable(name="specificAspects", description="Specific aspects to focus on", type="multiline"),
        ],
        tags=["education", "explanation", "learning"],
    ),
    PromptTemplate(
        id="creative-writing",
        name="Creative Writing",
        description="Generate creative content with specific parameters",
        category="Creative",
        template=(
            "Write a {{type}}.\n\n"
            "Topic: {{topic}}\n"
            "{{#if genre}}Genre: {{genre}}\n{{/if}}"
            "{{#if mood}}Mood: {{mood}}\n{{/if}}"
            "Length: {{length}}\n"
            "{{#if characters}}\nMain characters:\n{{characters}}\n{{/if}}"
            "{{#if setting}}\nSetting:\n{{setting}}\n{{/if}}"
            "{{#if style}}\nStyle: {{style}}\n{{/if}}"
            "{{#if additionalRequirements}}\nAdditional requirements:\n{{additionalRequirements}}\n{{/if}}"
        ),
        variables=[
            PromptVariable(
                name="type",
                description="Type of content",
                type="select",
                required=True,
                options=[
                    SelectOption(label="Short story", value="short story"),
                    SelectOption(label="Poem", value="poem"),
                    SelectOption(label="Essay", value="essay"),
                    SelectOption(label="Dialogue", value="dialogue"),
                    SelectOption(label="Screenplay", value="screenplay"),
                ],
            ),
            PromptVariable(name="topic", description="Topic or theme", required=True),
            PromptVariable(name="genre", description="Genre", type="select"),
            PromptVariable(name="mood", description="Mood or tone"),
            PromptVariable(name="length", description="Desired length", type="select", default="medium"),
            PromptVariable(name="characters", description="Main characters", type="multiline"),
            PromptVariable(name="setting", description="Setting description", type="multiline"),
            PromptVariable(name="style", description="Writing style"),
            PromptVariable(name="additionalRequirements", description="Additional requirements", type="multiline"),
        ],
        tags=["creative", "writing", "content"],
    ),
)

_BUILTIN_IDS = frozenset(t.id for t in BUILTIN_TEMPLATES)


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def parse_command(content: str) -> Optional[tuple]:
    """Split ``/template <id> k=v ...`` into (template_id, variables).

    Returns None when ``content`` is not a template command.
    """
    match = COMMAND_RE.match(content.strip())
    if not match:
        return None

    template_id, params = match.group(1), match.group(2)
    variables: Dict[str, str] = {}
    if params:
        for pair in PARAM_SPLIT_RE.split(params.strip()):
            key, sep, value = pair.partition("=")
            if key and sep and value:
                variables[key] = value.strip().strip("\"'")
    return template_id, variables


def render_template(template: PromptTemplate, values: Mapping[str, Any]) -> str:
    """Render ``template`` with ``values`` falling back to declared defaults."""
    resolved: Dict[str, Any] = dict(values)
    for variable in template.variables:
        if variable.name not in resolved:
            resolved[variable.name] = variable.default if variable.default is not None else ""

    # Conditionals first, so user-supplied text is never read as template syntax
    rendered = CONDITIONAL_RE.sub(
        lambda m: m.group(2) if _is_truthy(resolved.get(m.group(1))) else "",
        template.template,
    )

    declared = {v.name for v in template.variables}

    def _substitute(match: "re.Match") -> str:
        name = match.group(1)
        if name not in declared:
            return match.group(0)
        return str(resolved[name])

    rendered = PLACEHOLDER_RE.sub(_substitute, rendered)
    return re.sub(r"\n{3,}", "\n\n", rendered).strip()


class PromptTemplatesPlugin(Plugin):
    manifest = PluginManifest(
        id="prompt-templates",
        name="Prompt Templates",
        version="1.0.0",
        description="Provides customizable prompt templates for common tasks",
        author="chatwrap",
        icon="📝",
        permissions=[
            {"type": "read_messages", "description": "Read messages to apply templates"},
            {"type": "modify_messages", "description": "Modify messages with template content"},
        ],
        settings=[
            {
                "key": "defaultLanguage",
                "name": "Default Language",
                "type": "select",
                "description": "Default language for templates",
                "default": "ko",
                "options": [
                    {"label": "한국어", "value": "ko"},
                    {"label": "English", "value": "en"},
                    {"label": "日本語", "value": "ja"},
                    {"label": "中文", "value": "zh"},
                ],
            },
            {
                "key": "autoSuggest",
                "name": "Auto Suggest Templates",
                "type": "boolean",
                "description": "Automatically suggest relevant templates",
                "default": True,
            },
        ],
    )

    def __init__(self, storage: Optional[KeyValueStore] = None, settings: Optional[Mapping[str, Any]] = None):
        super().__init__(settings)
        self._storage = storage
        self._custom: List[PromptTemplate] = []

    async def on_enable(self) -> None:
        await self.load_custom_templates()

    async def before_send_message(self, content: str, context: PluginContext) -> Optional[str]:
        parsed = parse_command(content)
        if parsed is None:
            return None

        template_id, variables = parsed
        template = self.get_template(template_id)
        if template is None:
            logger.info("Unknown template %r, sending message unchanged", template_id)
            return None
        return render_template(template, variables)

    # -- Catalog ---------------------------------------------------------------

    def get_templates(self) -> List[PromptTemplate]:
        return list(BUILTIN_TEMPLATES) + list(self._custom)

    def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        for template in self.get_templates():
            if template.id == template_id:
                return template
        return None

    def get_templates_by_category(self, category: str) -> List[PromptTemplate]:
        return [t for t in self.get_templates() if t.category == category]

    def get_templates_by_tag(self, tag: str) -> List[PromptTemplate]:
        return [t for t in self.get_templates() if tag in t.tags]

    def suggest_templates(self, text: str, limit: int = 3) -> List[PromptTemplate]:
        """Templates whose tags appear in ``text``, best match first."""
        if not self.get_setting("autoSuggest", True):
            return []
        words = set(re.findall(r"\w+", text.lower()))
        scored = []
        for template in self.get_templates():
            score = len(words & {tag.lower() for tag in template.tags})
            if score:
                scored.append((score, template))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [template for _, template in scored[:limit]]

    # -- Custom templates ------------------------------------------------------

    async def add_custom_template(self, template: PromptTemplate) -> None:
        if template.id in _BUILTIN_IDS:
            raise ValueError(f"Template id {template.id!r} is reserved by a built-in template")
        self._custom = [t for t in self._custom if t.id != template.id] + [template]
        await self._save_custom_templates()

    async def remove_custom_template(self, template_id: str) -> bool:
        remaining = [t for t in self._custom if t.id != template_id]
        if len(remaining) == len(self._custom):
            return False
        self._custom = remaining
        await self._save_custom_templates()
        return True

    async def load_custom_templates(self) -> None:
        if self._storage is None:
            return
        try:
            stored = await self._storage.get(CUSTOM_TEMPLATES_KEY) or []
        except Exception as e:
            logger.error("Failed to load custom templates: %s", e)
            return

        loaded = []
        for raw in stored:
            try:
                template = PromptTemplate.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping invalid custom template: %s", e)
                continue
            if template.id not in _BUILTIN_IDS:
                loaded.append(template)
        self._custom = loaded

    async def _save_custom_templates(self) -> None:
        if self._storage is None:
            return
        await self._storage.set(CUSTOM_TEMPLATES_KEY, [t.model_dump(mode="json") for t in self._custom])
