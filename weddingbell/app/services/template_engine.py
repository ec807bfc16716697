"""
Template engine for the WeddingBell notification service.

Renders a notification for one channel from a Jinja2 template keyed by
(type, channel, language) and shapes the result into the payload the
channel sender expects.

Key Features:
- Language fallback: requested language, then default language, then a
  generic per-channel template
- Templates are compiled before they are registered; a template that does not
  compile is never stored
- ``--- name ---`` section markers split a template into subject, content,
  footer and other sections; JSON sections (headers, actions, data, metadata,
  buttons) are parsed when valid
- Helpers for dates, currency, plurals, comparisons, links, buttons and
  countdowns
- Email bodies are wrapped in a base HTML layout with a default footer
- SMS text is capped at 160 characters and tagged GSM or UCS2
- Template management: create, update, preview, export and import
"""

import html
import json
import operator
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urljoin

from jinja2 import ChainableUndefined, Environment, Template, TemplateSyntaxError, Undefined, pass_context
from jinja2.exceptions import TemplateError as JinjaTemplateError
from markupsafe import Markup

from weddingbell.app.core.exceptions import (
    BaseCustomException,
    TemplateError,
    TemplateNotFoundError,
    ValidationError,
    raise_template_compile_error,
)
from weddingbell.app.models.domain.notification import ALL_CHANNELS, Channel, parse_datetime, utc_now
from weddingbell.app.models.domain.template import NotificationTemplate, TemplateKey
from weddingbell.app.repositories.interfaces import TemplateRepository
from weddingbell.app.utils.logging import get_logger, performance_context
from weddingbell.config.settings import AppSettings, PushSettings, SMSSettings

logger = get_logger(__name__)


SECTION_PATTERN = re.compile(r"^---\s*(\w+)\s*---$")
JSON_SECTIONS = ("headers", "actions", "data", "metadata", "buttons")
GSM_PATTERN = re.compile(
    "^[@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,\\-./0-9:;<=>?¡A-Z\\[\\]^_`a-z{|}~¨¿äöñüàÄÖÑÜ§]+$"
)
TAG_PATTERN = re.compile(r"<[^>]+>")

BUTTON_STYLES = {
    "primary": "background-color: #4A90E2; color: white;",
    "secondary": "background-color: #E0E0E0; color: #333;",
    "danger": "background-color: #E74C3C; color: white;",
    "success": "background-color: #27AE60; color: white;",
}

CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£", "CHF": "CHF"}

_WEEKDAYS = {
    "fr": ["lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche"],
    "en": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"],
}
_MONTHS = {
    "fr": ["janvier", "février", "mars", "avril", "mai", "juin", "juillet",
           "août", "septembre", "octobre", "novembre", "décembre"],
    "en": ["January", "February", "March", "April", "May", "June", "July",
           "August", "September", "October", "November", "December"],
}

EMAIL_LAYOUT = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{{ subject }}</title>
  <style>
    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
    .container { max-width: 600px; margin: 0 auto; padding: 20px; }
    .header { background: #f8f9fa; padding: 20px; text-align: center; }
    .content { padding: 20px 0; }
    .footer { margin-top: 40px; padding-top: 20px; border-top: 1px solid #dee2e6; font-size: 14px; color: #6c757d; }
  </style>
</head>
<body>
  <div class="container">
    {% if preheader %}<div style="display: none;">{{ preheader }}</div>{% endif %}
    {% if header %}<div class="header">{{ header }}</div>{% endif %}
    <div class="content">{{ content }}</div>
    <div class="footer">{{ footer }}</div>
  </div>
</body>
</html>"""

DEFAULT_FOOTER = """<p>Cordialement,<br>L'équipe {{ app_name }}</p>
<p style="font-size: 12px; color: #6c757d;">
  Vous recevez cet email car vous êtes inscrit sur {{ app_name }}.<br>
  <a href="{{ app_url }}/settings/notifications">Gérer vos préférences</a> |
  <a href="{{ app_url }}/unsubscribe?token={{ unsubscribe_token }}">Se désabonner</a>
</p>"""

GENERIC_TEMPLATES = {
    Channel.EMAIL.value: (
        "--- subject ---\n{{ title or 'Notification' }}\n"
        "--- content ---\n<p>{{ message or body }}</p>"
    ),
    Channel.SMS.value: "{{ title }}: {{ message or body }}",
    Channel.PUSH.value: (
        "--- title ---\n{{ title or 'Notification' }}\n"
        "--- body ---\n{{ message or body }}"
    ),
    Channel.REALTIME.value: (
        "--- title ---\n{{ title }}\n"
        "--- message ---\n{{ message or body }}"
    ),
}

BUILTIN_TEMPLATES = [
    {
        "type": "reminder_24h",
        "channel": Channel.EMAIL.value,
        "language": "fr",
        "content": (
            "--- subject ---\n"
            "Rappel : {{ title }} demain\n"
            "--- preheader ---\n"
            "{{ wedding.name or title }} - plus que {{ countdown(event_date or wedding.date) }}\n"
            "--- header ---\n"
            "<h1>{{ title }}</h1>\n"
            "--- content ---\n"
            "<p>Bonjour {{ user.name or '' }},</p>\n"
            "<p>{{ body }}</p>\n"
            "{% if event_date %}<p>Rendez-vous le {{ format_date(event_date, 'full') }} "
            "à {{ format_date(event_date, 'time') }}.</p>{% endif %}\n"
            "{% if location %}<p>Lieu : {{ location }}</p>{% endif %}\n"
            "{{ action_button('Voir le détail', url('/dashboard')) }}"
        ),
    },
    {
        "type": "payment_failed",
        "channel": Channel.PUSH.value,
        "language": "fr",
        "content": (
            "--- title ---\n"
            "⚠️ Échec de paiement\n"
            "--- body ---\n"
            "Le paiement de {{ amount }}€ pour {{ vendor.name or vendor }} a échoué. "
            "Veuillez mettre à jour vos informations de paiement.\n"
            "--- actions ---\n"
            '[{"action": "update_payment", "title": "Mettre à jour"}]'
        ),
    },
    {
        "type": "payment_failed",
        "channel": Channel.SMS.value,
        "language": "fr",
        "content": (
            "{{ app_name }} : le paiement de {{ amount }}€ pour {{ vendor.name or vendor }} a échoué. "
            "Mettez à jour votre moyen de paiement sur {{ url('/payments') }}"
        ),
    },
]


# Template helpers

@pass_context
def format_date(context, value: Any, date_format: Optional[str] = None) -> str:
    """Localized date formatting: ``full``, ``short``, ``time`` or date and time."""
    if value is None or value == "" or isinstance(value, Undefined):
        return ""
    try:
        moment = parse_datetime(value)
    except ValueError:
        return str(value)
    language = context.get("language") or "fr"
    if language not in _WEEKDAYS:
        language = "fr"

    if date_format == "full":
        weekday = _WEEKDAYS[language][moment.weekday()]
        month = _MONTHS[language][moment.month - 1]
        if language == "en":
            return f"{weekday}, {month} {moment.day}, {moment.year}"
        return f"{weekday} {moment.day} {month} {moment.year}"
    if date_format == "short":
        return moment.strftime("%m/%d/%Y" if language == "en" else "%d/%m/%Y")
    if date_format == "time":
        return moment.strftime("%H:%M")
    return moment.strftime("%m/%d/%Y %H:%M:%S" if language == "en" else "%d/%m/%Y %H:%M:%S")


def format_currency(amount: Any, currency: str = "EUR") -> str:
    """French-style currency formatting, e.g. ``1 500,00 €``."""
    if isinstance(amount, Undefined):
        return ""
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return str(amount)
    grouped = f"{value:,.2f}".replace(",", " ").replace(".", ",")
    return f"{grouped} {CURRENCY_SYMBOLS.get(currency, currency)}"


def plural(count: Any, singular: str, plural_form: str) -> str:
    return singular if count == 1 else plural_form


def join(items: Any, separator: str = ", ") -> str:
    if not isinstance(items, (list, tuple)):
        return ""
    return separator.join(str(item) for item in items)


def countdown(target: Any, now: Optional[datetime] = None) -> str:
    """Human countdown to ``target`` in French days or hours."""
    if isinstance(target, Undefined):
        return ""
    try:
        target_moment = parse_datetime(target)
    except ValueError:
        return ""
    if target_moment is None:
        return ""
    diff = target_moment - (now or utc_now())
    if diff <= timedelta(0):
        return "C'est aujourd'hui !"
    days = diff.days
    if days > 0:
        return f"{days} jour{'s' if days > 1 else ''}"
    hours = diff.seconds // 3600
    return f"{hours} heure{'s' if hours > 1 else ''}"


def compare(op):
    """Wrap a comparison so a missing operand is false instead of an error."""
    def helper(a: Any, b: Any) -> bool:
        if isinstance(a, Undefined) or isinstance(b, Undefined):
            return False
        try:
            return op(a, b)
        except TypeError:
            return False
    return helper


def action_button(text: Any, url: Any, style: str = "primary") -> Markup:
    css = BUTTON_STYLES.get(style, BUTTON_STYLES["primary"])
    return Markup(
        '<a href="{url}" style="display: inline-block; padding: 12px 24px; '
        'text-decoration: none; border-radius: 4px; {css}">{text}</a>'
    ).format(url=url, css=Markup(css), text=text)


def parse_sections(rendered: str) -> Dict[str, Any]:
    """
    Split rendered text on ``--- name ---`` marker lines.

    Text before the first marker belongs to the ``content`` section. JSON
    sections are decoded when valid and kept as text otherwise.
    """
    sections: Dict[str, Any] = {}
    current = "content"
    buffer: List[str] = []

    for line in rendered.split("\n"):
        match = SECTION_PATTERN.match(line.strip())
        if match:
            if buffer:
                sections[current] = "\n".join(buffer).strip()
            current = match.group(1)
            buffer = []
        else:
            buffer.append(line)

    if buffer:
        sections[current] = "\n".join(buffer).strip()

    for key in JSON_SECTIONS:
        if isinstance(sections.get(key), str):
            try:
                sections[key] = json.loads(sections[key])
            except ValueError:
                pass

    return sections


def detect_sms_encoding(text: str) -> str:
    return "GSM" if GSM_PATTERN.match(text) else "UCS2"


def strip_markup(text: str) -> str:
    return html.unescape(TAG_PATTERN.sub("", text)).strip()


@dataclass
class CompiledTemplate:
    record: NotificationTemplate
    template: Template


class TemplateEngine:
    """
    Compiles, stores and renders notification templates.

    Usage:
        engine = TemplateEngine(app_settings)
        payload = engine.render("reminder_24h", "email", "fr", {"title": "..."})
    """

    def __init__(
        self,
        app_settings: AppSettings,
        repository: Optional[TemplateRepository] = None,
        push_settings: Optional[PushSettings] = None,
        sms_settings: Optional[SMSSettings] = None,
        load_builtins: bool = True
    ):
        self.app_settings = app_settings
        self.repository = repository
        self.push_settings = push_settings or PushSettings()
        self.sms_settings = sms_settings or SMSSettings()
        self.default_language = app_settings.default_language

        self._html_env = self._build_environment(autoescape=True)
        self._text_env = self._build_environment(autoescape=False)

        self._templates: Dict[TemplateKey, CompiledTemplate] = {}
        self._generic = {
            channel: self._text_env.from_string(source)
            if channel != Channel.EMAIL.value else self._html_env.from_string(source)
            for channel, source in GENERIC_TEMPLATES.items()
        }
        self._layout = self._html_env.from_string(EMAIL_LAYOUT)
        self._default_footer = self._html_env.from_string(DEFAULT_FOOTER)

        if load_builtins:
            for data in BUILTIN_TEMPLATES:
                self.register_template(NotificationTemplate(
                    metadata={"builtin": True}, **data
                ))

        logger.info(
            "TemplateEngine initialized",
            templates=len(self._templates),
            default_language=self.default_language
        )

    def _build_environment(self, autoescape: bool) -> Environment:
        env = Environment(
            autoescape=autoescape,
            undefined=ChainableUndefined,
            keep_trailing_newline=False,
        )
        env.globals.update(
            format_date=format_date,
            format_currency=format_currency,
            plural=plural,
            eq=lambda a, b: a == b,
            ne=lambda a, b: a != b,
            lt=compare(operator.lt),
            gt=compare(operator.gt),
            lte=compare(operator.le),
            gte=compare(operator.ge),
            join=join,
            url=self._url,
            action_button=action_button,
            countdown=countdown,
        )
        return env

    def _url(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        url = urljoin(self.app_settings.url.rstrip("/") + "/", str(path).lstrip("/"))
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    def _env_for(self, channel: str) -> Environment:
        return self._html_env if channel == Channel.EMAIL.value else self._text_env

    def default_context(self) -> Dict[str, Any]:
        now = utc_now()
        return {
            "app_name": self.app_settings.name,
            "app_url": self.app_settings.url,
            "support_email": self.app_settings.support_email,
            "current_year": now.year,
            "timestamp": now.isoformat(),
        }

    # Registration

    def compile(self, content: str, channel: str) -> Template:
        """
        Compile template source for ``channel``.

        Raises:
            TemplateError: If the source is not valid Jinja2
        """
        try:
            return self._env_for(channel).from_string(content)
        except TemplateSyntaxError as e:
            raise_template_compile_error(f"Template does not compile: {e.message} (line {e.lineno})", channel=channel)

    def register_template(self, template: NotificationTemplate) -> NotificationTemplate:
        """Compile and make ``template`` active for its key."""
        if template.channel not in ALL_CHANNELS:
            raise ValidationError(
                f"Unknown channel: {template.channel}",
                field_errors=[{"field": "channel", "message": f"must be one of {ALL_CHANNELS}"}]
            )
        compiled = self.compile(template.content, template.channel)
        template.compiled_at = utc_now()
        self._templates[template.key] = CompiledTemplate(record=template, template=compiled)
        return template

    def invalidate(self, notification_type: str, channel: str, language: str) -> None:
        self._templates.pop((notification_type, channel, language), None)

    def has_template(self, notification_type: str, channel: str, language: str) -> bool:
        return (notification_type, channel, language) in self._templates

    # Rendering

    def _resolve(self, notification_type: str, channel: str, language: str) -> Template:
        for key in ((notification_type, channel, language),
                    (notification_type, channel, self.default_language)):
            compiled = self._templates.get(key)
            if compiled is not None:
                return compiled.template

        generic = self._generic.get(channel)
        if generic is None:
            raise TemplateNotFoundError(
                f"No template found for {notification_type}:{channel}:{language}",
                notification_type=notification_type,
                channel=channel,
                language=language
            )
        return generic

    def render(
        self,
        notification_type: str,
        channel: str,
        language: Optional[str],
        data: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Render the payload for one channel.

        Args:
            notification_type: Notification type
            channel: Target channel
            language: Requested language, default language when None
            data: Template variables

        Returns:
            Channel-shaped payload dictionary

        Raises:
            TemplateNotFoundError: If no template exists, generic included
            TemplateError: If rendering fails
        """
        language = language or self.default_language
        template = self._resolve(notification_type, channel, language)

        context = {
            **self.default_context(),
            **data,
            "channel": channel,
            "language": language,
            "type": notification_type,
        }

        try:
            rendered = template.render(**context)
        except (JinjaTemplateError, TypeError, ValueError) as e:
            raise TemplateError(
                f"Failed to render {notification_type}:{channel}:{language}: {e}",
                notification_type=notification_type,
                channel=channel,
                language=language
            ) from e

        if channel == Channel.EMAIL.value:
            return self._process_email(rendered, context)
        if channel == Channel.SMS.value:
            return self._process_sms(rendered)
        if channel == Channel.PUSH.value:
            return self._process_push(rendered, context)
        return self._process_realtime(rendered, context)

    def _process_email(self, rendered: str, context: Dict[str, Any]) -> Dict[str, Any]:
        sections = parse_sections(rendered)
        subject = strip_markup(str(sections.get("subject") or "")) or context.get("title") or "Notification"

        footer = sections.get("footer") or self._default_footer.render(**context)
        body_html = self._layout.render(
            subject=subject,
            preheader=sections.get("preheader", ""),
            header=Markup(sections.get("header", "")),
            content=Markup(sections.get("content", "")),
            footer=Markup(footer),
        )

        text_parts = [
            strip_markup(str(sections[name]))
            for name in ("subject", "header", "content", "footer")
            if sections.get(name)
        ]

        return {
            "subject": subject,
            "html": body_html,
            "text": "\n\n".join(part for part in text_parts if part),
            "headers": sections.get("headers") if isinstance(sections.get("headers"), dict) else {},
        }

    def _process_sms(self, rendered: str) -> Dict[str, Any]:
        max_length = self.sms_settings.max_length
        text = rendered.strip()
        if len(text) > max_length:
            text = text[:max_length - 3] + "..."
        return {"text": text, "encoding": detect_sms_encoding(text), "length": len(text)}

    def _process_push(self, rendered: str, context: Dict[str, Any]) -> Dict[str, Any]:
        sections = parse_sections(rendered)
        return {
            "title": sections.get("title") or context.get("title") or "Notification",
            "body": sections.get("body") or sections.get("content") or "",
            "icon": sections.get("icon") or context.get("icon") or self.push_settings.default_icon,
            "badge": sections.get("badge") or context.get("badge"),
            "image": sections.get("image") or context.get("image"),
            "actions": sections.get("actions") if isinstance(sections.get("actions"), list) else [],
            "data": sections.get("data") if isinstance(sections.get("data"), dict) else {},
        }

    def _process_realtime(self, rendered: str, context: Dict[str, Any]) -> Dict[str, Any]:
        sections = parse_sections(rendered)
        return {
            "type": context.get("type") or "notification",
            "title": sections.get("title") or context.get("title"),
            "message": sections.get("message") or sections.get("content") or "",
            "severity": sections.get("severity") or "info",
            "actions": sections.get("actions") if isinstance(sections.get("actions"), list) else [],
            "metadata": sections.get("metadata") if isinstance(sections.get("metadata"), dict) else {},
        }

    # Template management

    async def load_from_repository(self) -> int:
        """Register every active stored template. Broken ones are logged and skipped."""
        if self.repository is None:
            return 0
        loaded = 0
        for template in await self.repository.find({"active": True}):
            try:
                self.register_template(template)
                loaded += 1
            except BaseCustomException as e:
                logger.error("Failed to load stored template", template_id=template.id, error=str(e))
        logger.info("Loaded stored templates", count=loaded)
        return loaded

    async def create_template(
        self,
        notification_type: str,
        channel: str,
        language: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> NotificationTemplate:
        """Validate, persist and register a new template."""
        template = NotificationTemplate(
            type=notification_type,
            channel=channel,
            language=language,
            content=content,
            metadata=metadata or {},
        )
        with performance_context("template_create", key=":".join(template.key)):
            if channel not in ALL_CHANNELS:
                raise ValidationError(
                    f"Unknown channel: {channel}",
                    field_errors=[{"field": "channel", "message": f"must be one of {ALL_CHANNELS}"}]
                )
            self.compile(content, channel)
            if self.repository is not None:
                await self.repository.save(template)
            self.register_template(template)

        logger.info("Template created", template_id=template.id, key=":".join(template.key))
        return template

    async def update_template(self, template_id: str, updates: Dict[str, Any]) -> NotificationTemplate:
        """
        Update a stored template.

        New content is compiled before anything is saved. An inactive template
        is removed from the active set.

        Raises:
            TemplateNotFoundError: If no stored template has ``template_id``
            TemplateError: If the new content does not compile
        """
        if self.repository is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")
        template = await self.repository.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")

        old_key = template.key
        if "content" in updates and updates["content"] is not None:
            self.compile(updates["content"], updates.get("channel") or template.channel)

        for field_name in ("type", "channel", "language", "content", "metadata", "active"):
            if field_name in updates and updates[field_name] is not None:
                setattr(template, field_name, updates[field_name])

        await self.repository.save(template)

        current = self._templates.get(old_key)
        if current is not None and current.record.id == template.id:
            self._templates.pop(old_key)
        if template.active:
            self.register_template(template)

        logger.info("Template updated", template_id=template_id, active=template.active)
        return template

    def preview(
        self,
        notification_type: str,
        channel: str,
        language: Optional[str] = None,
        sample_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Render with sample wedding data, overridden by ``sample_data``."""
        data = {
            "user": {"name": "Jean Dupont", "email": "jean.dupont@example.com"},
            "wedding": {
                "name": "Mariage de Marie & Pierre",
                "date": (utc_now() + timedelta(days=30)).isoformat(),
                "location": "Château de Versailles",
            },
            "vendor": {"name": "Fleurs Magiques", "category": "Fleuriste"},
            "amount": 1500,
            **(sample_data or {}),
        }
        return self.render(notification_type, channel, language, data)

    def export_templates(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Active templates matching ``type``/``channel``/``language`` filters."""
        filters = filters or {}
        exported = []
        for (notification_type, channel, language), compiled in self._templates.items():
            if filters.get("type") and notification_type != filters["type"]:
                continue
            if filters.get("channel") and channel != filters["channel"]:
                continue
            if filters.get("language") and language != filters["language"]:
                continue
            exported.append({
                "type": notification_type,
                "channel": channel,
                "language": language,
                "content": compiled.record.content,
                "metadata": dict(compiled.record.metadata),
            })
        return exported

    async def import_templates(self, templates: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Create each template independently and report per-item failures."""
        results: Dict[str, Any] = {"success": 0, "failed": 0, "errors": []}
        for data in templates:
            key = f"{data.get('type')}:{data.get('channel')}:{data.get('language')}"
            try:
                await self.create_template(
                    data["type"],
                    data["channel"],
                    data.get("language") or self.default_language,
                    data["content"],
                    data.get("metadata"),
                )
                results["success"] += 1
            except (BaseCustomException, KeyError) as e:
                results["failed"] += 1
                results["errors"].append({"template": key, "error": str(e)})
        return results
