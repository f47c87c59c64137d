"""
Admin commands for adaptive link management.
"""
import json
import logging
import shlex
from datetime import datetime, UTC
from html import escape
from typing import Any, Dict, List, Optional, Tuple

from aiogram import Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message, BufferedInputFile

from src.modules.adaptive.domain.errors import ConfigurationError
from src.modules.adaptive.domain.models import AdaptiveLink, Resolution
from src.modules.adaptive.services.adaptive_service import AdaptiveLinkService
from src.modules.adaptive.services.analytics_service import AnalyticsService
from src.modules.adaptive.utils.schedule import describe_rule_window

logger = logging.getLogger(__name__)


def _get_command_args(command: CommandObject | None) -> str:
    """Extract command arguments."""
    if command is None or not command.args:
        return ""
    return command.args.strip()


def _parse_create_args(args: str) -> Tuple[str, Optional[str], List[Tuple[str, str]]]:
    """
    Parse /adaptive_create command arguments.

    Supports:
    - /adaptive_create "Name with spaces" https://a.example https://b.example
    - /adaptive_create Menu "Lunch|https://a.example" "Dinner|https://b.example"
    - /adaptive_create Menu slug=menu-2024 https://a.example

    Returns:
        Tuple of (name, slug or None, [(label, content), ...])
    """
    if not args:
        raise ValueError("Empty arguments")

    try:
        parts = shlex.split(args)
    except ValueError:
        parts = args.split()

    if len(parts) < 2:
        raise ValueError("Provide a name and at least one content URL")

    name = parts[0]
    slug = None
    contents: List[Tuple[str, str]] = []

    for part in parts[1:]:
        if part.lower().startswith("slug="):
            slug = part[5:] or None
            continue

        if "|" in part:
            label, content = part.split("|", 1)
        else:
            label, content = "", part
        contents.append((label.strip(), content.strip()))

    if not contents:
        raise ValueError("Provide at least one content URL")

    return name, slug, contents


def _parse_config_args(args: str) -> Tuple[str, Dict[str, Any]]:
    """
    Parse /adaptive_config arguments: a link identifier followed by a JSON object.

    Raises:
        ValueError: If the identifier or JSON is missing or invalid
    """
    parts = args.split(maxsplit=1)
    if len(parts) < 2:
        raise ValueError("Provide a link id or slug followed by JSON options")

    identifier, raw = parts
    try:
        options = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})") from e

    if not isinstance(options, dict):
        raise ValueError("Options must be a JSON object")

    return identifier, options


def _parse_date(date_str: str) -> Optional[datetime]:
    """
    Parse date string in YYYY-MM-DD format.

    Returns:
        Datetime in UTC timezone or None if invalid
    """
    try:
        dt = datetime.strptime(date_str, "%Y-%m-%d")
        return dt.replace(tzinfo=UTC)
    except ValueError:
        return None


def _error_text(error: Exception) -> str:
    return f"❌ Error: {escape(str(error))}"


def build_public_url(base_url: str, slug: str) -> str:
    return f"{base_url.rstrip('/')}/r/{slug}"


def render_link_details(
    link: AdaptiveLink,
    public_url: str,
    preview: Optional[Resolution] = None
) -> str:
    """Render a link's configuration as an HTML message."""
    slot_names = {slot.id: slot.name for slot in link.slots}
    default_id = link.effective_default_slot_id

    def slot_label(slot_id: Optional[str]) -> str:
        if not slot_id:
            return "not set"
        return escape(slot_names.get(slot_id, f"missing ({slot_id})"))

    lines = [
        f"🔀 <b>{escape(link.name)}</b> (#{link.link_id})",
        f"🔗 <code>{escape(public_url)}</code>",
        f"🌍 Time zone: {escape(link.timezone or 'UTC')}",
    ]
    if link.scan_limit > 0:
        lines.append(f"📈 Scans this month: {link.scan_count} / {link.scan_limit}")
    else:
        lines.append(f"📈 Scans this month: {link.scan_count}")

    lines.append("\n📦 <b>Content</b>")
    for slot in link.slots:
        marker = "⭐" if slot.id == default_id else "•"
        lines.append(f"{marker} {escape(slot.name)} [<code>{escape(slot.id)}</code>]\n   {escape(slot.content)}")

    if link.date_rules:
        lines.append("\n🗓 <b>Date rules</b>")
        for index, rule in enumerate(link.date_rules, start=1):
            lines.append(f"{index}. {escape(describe_rule_window(rule))} → {slot_label(rule.slot)}")

    if link.first_return.enabled:
        lines.append(
            "\n👋 <b>Visit rules</b>\n"
            f"First visit → {slot_label(link.first_return.first_slot)}\n"
            f"Return visit → {slot_label(link.first_return.return_slot)}"
        )

    if link.admin.enabled:
        lines.append(
            "\n🛡 <b>Admin override</b>\n"
            f"{escape(', '.join(link.admin.ips))} → {slot_label(link.admin.slot)}"
        )

    if preview:
        lines.append(
            f"\n👀 Serving now: {slot_label(preview.slot_id)} ({preview.matched_rule.value})"
        )

    return "\n".join(lines)


def create_adaptive_admin_router(
    service: AdaptiveLinkService,
    analytics_service: AnalyticsService,
    admin_user_ids: frozenset[int],
    public_base_url: str
) -> Router:
    """
    Create router for adaptive link admin commands.

    Commands:
    - /adaptive_create <name> [slug=...] <content...> - Create the account's adaptive link
    - /adaptive_list - List your adaptive links
    - /adaptive_show <link_id or slug> - Show configuration and the content served now
    - /adaptive_config <link_id or slug> <json> - Replace slots and rules from JSON options
    - /adaptive_slot_delete <link_id or slug> <slot_id> - Delete a content slot
    - /adaptive_stats [link_id or slug] [start_date] [end_date] - Statistics with chart
    - /adaptive_delete <link_id or slug> - Soft delete a link

    Args:
        service: Adaptive link service
        analytics_service: Analytics service instance
        admin_user_ids: Telegram user IDs allowed to use these commands
        public_base_url: Base URL the redirect server is reachable at
    """
    router = Router(name="adaptive_admin")

    def is_admin(user_id: int) -> bool:
        if not admin_user_ids:
            return False
        return user_id in admin_user_ids

    async def find_link(identifier: str, owner_id: str) -> Optional[AdaptiveLink]:
        if identifier.isdigit():
            link = await service.get_link_by_id(int(identifier))
        else:
            link = await service.get_link_by_slug(identifier)

        if link is None or link.owner_id != owner_id:
            return None
        return link

    @router.message(Command("adaptive_create"))
    async def cmd_adaptive_create(message: Message, command: CommandObject) -> None:
        """Create a new adaptive link."""
        user = message.from_user
        if not user or not is_admin(user.id):
            return

        args = _get_command_args(command)
        if not args:
            await message.answer(
                "ℹ️ Usage: /adaptive_create [name] [slug=...] [content...]\n\n"
                "Creates an adaptive QR link. Each content is a URL, optionally\n"
                "prefixed with a label: \"Lunch|https://example.com/lunch\".\n"
                "The first content is served by default.\n\n"
                "Examples:\n"
                "/adaptive_create Menu https://example.com/menu\n"
                "/adaptive_create \"Cafe menu\" slug=cafe \"Lunch|https://a.example\" \"Dinner|https://b.example\""
            )
            return

        try:
            name, slug, contents = _parse_create_args(args)
            link = await service.create_link(name, str(user.id), contents, slug=slug)
            url = build_public_url(public_base_url, link.slug)

            await message.answer(
                f"✅ Adaptive link created!\n\n"
                f"🏷 Name: {escape(link.name)}\n"
                f"🔗 Slug: {escape(link.slug)}\n"
                f"🆔 ID: {link.link_id}\n\n"
                f"📎 Link:\n{escape(url)}\n\n"
                f"Configure rules with /adaptive_config {link.link_id} {{...}}",
                parse_mode="HTML"
            )

        except ValueError as e:
            await message.answer(_error_text(e), parse_mode="HTML")

    @router.message(Command("adaptive_list"))
    async def cmd_adaptive_list(message: Message) -> None:
        """List the user's adaptive links."""
        user = message.from_user
        if not user or not is_admin(user.id):
            return

        links = await service.list_links(owner_id=str(user.id), include_deleted=False)

        if not links:
            await message.answer("📭 No adaptive links yet. Create one with /adaptive_create.")
            return

        lines = ["📋 Your adaptive links:\n"]
        for link in links:
            created = link.created_at.strftime('%Y-%m-%d %H:%M UTC') if link.created_at else "unknown"
            lines.append(
                f"🆔 {link.link_id} | 🏷 {escape(link.name)}\n"
                f"   🔗 {escape(link.slug)} | 📦 {len(link.slots)} content\n"
                f"   📅 {created}\n"
            )

        await message.answer("\n".join(lines), parse_mode="HTML")

    @router.message(Command("adaptive_show"))
    async def cmd_adaptive_show(message: Message, command: CommandObject) -> None:
        """Show a link's configuration and what it serves right now."""
        user = message.from_user
        if not user or not is_admin(user.id):
            return

        args = _get_command_args(command)
        if not args:
            await message.answer("ℹ️ Usage: /adaptive_show [link_id|slug]")
            return

        link = await find_link(args.split()[0], str(user.id))
        if not link:
            await message.answer("❌ Link not found.")
            return

        try:
            preview = service.resolver.preview(link)
        except ConfigurationError as e:
            logger.warning(f"Preview failed for link {link.link_id}: {e}")
            preview = None

        url = build_public_url(public_base_url, link.slug)
        await message.answer(render_link_details(link, url, preview), parse_mode="HTML")

    @router.message(Command("adaptive_config"))
    async def cmd_adaptive_config(message: Message, command: CommandObject) -> None:
        """Apply JSON options to a link."""
        user = message.from_user
        if not user or not is_admin(user.id):
            return

        args = _get_command_args(command)
        if not args:
            await message.answer(
                "ℹ️ Usage: /adaptive_config [link_id|slug] [json]\n\n"
                "Replaces the link's content and rules. Example:\n"
                "/adaptive_config 1 {\"adaptive\": {\"slots\": [{\"id\": \"a\", \"url\": \"https://a.example\"}, "
                "{\"id\": \"b\", \"url\": \"https://b.example\"}], \"defaultSlot\": \"a\", "
                "\"dateRules\": [{\"slot\": \"b\", \"days\": [\"Sat\", \"Sun\"]}]}}"
            )
            return

        try:
            identifier, options = _parse_config_args(args)
            link = await find_link(identifier, str(user.id))
            if not link:
                await message.answer("❌ Link not found.")
                return

            updated = await service.apply_options(link.link_id, options)
            url = build_public_url(public_base_url, updated.slug)
            await message.answer(
                "✅ Configuration saved.\n\n" + render_link_details(updated, url),
                parse_mode="HTML"
            )

        except ValueError as e:
            await message.answer(_error_text(e), parse_mode="HTML")

    @router.message(Command("adaptive_slot_delete"))
    async def cmd_adaptive_slot_delete(message: Message, command: CommandObject) -> None:
        """Delete a slot and the rules that point at it."""
        user = message.from_user
        if not user or not is_admin(user.id):
            return

        parts = _get_command_args(command).split()
        if len(parts) < 2:
            await message.answer(
                "ℹ️ Usage: /adaptive_slot_delete [link_id|slug] [slot_id]\n\n"
                "Rules using the content are removed too. Slot ids are listed by /adaptive_show."
            )
            return

        link = await find_link(parts[0], str(user.id))
        if not link:
            await message.answer("❌ Link not found.")
            return

        try:
            updated = await service.remove_slot(link.link_id, parts[1])
            await message.answer(
                f"✅ Content deleted. {len(updated.slots)} content and "
                f"{len(updated.date_rules)} date rules left."
            )

        except ValueError as e:
            await message.answer(_error_text(e), parse_mode="HTML")

    @router.message(Command("adaptive_stats"))
    async def cmd_adaptive_stats(message: Message, command: CommandObject) -> None:
        """Get statistics and chart for the user's link(s)."""
        user = message.from_user
        if not user or not is_admin(user.id):
            return

        parts = _get_command_args(command).split()

        try:
            link = None
            if parts and _parse_date(parts[0]) is None:
                link = await find_link(parts[0], str(user.id))
                if not link:
                    await message.answer("❌ Link not found.")
                    return
                parts = parts[1:]

            start_date = _parse_date(parts[0]) if len(parts) > 0 else None
            end_date = _parse_date(parts[1]) if len(parts) > 1 else None

            if link:
                link_ids = [link.link_id]
            else:
                links = await service.list_links(owner_id=str(user.id))
                link_ids = [item.link_id for item in links]

            if not link_ids:
                await message.answer("📭 No adaptive links yet.")
                return

            stats = await analytics_service.get_aggregated_stats(
                link_ids=link_ids,
                start_date=start_date,
                end_date=end_date,
                daily=False
            )

            if not stats:
                await message.answer("📭 No data for the selected period.")
                return

            text = analytics_service.format_stats_text(stats, include_daily=False)
            if link:
                slot_stats = await analytics_service.get_slot_stats(
                    link.link_id, start_date=start_date, end_date=end_date
                )
                text += "\n" + analytics_service.format_slot_breakdown(link, slot_stats)

            chart_buffer = await analytics_service.generate_chart(
                link_ids=link_ids,
                start_date=start_date,
                end_date=end_date,
                metrics=['total', 'unique', 'first_visit']
            )

            await message.answer(text, parse_mode="HTML")

            chart_file = BufferedInputFile(
                chart_buffer.read(),
                filename="adaptive_stats.png"
            )
            await message.answer_photo(chart_file)

        except Exception as e:
            logger.error(f"Failed to build adaptive stats for user {user.id}: {e}", exc_info=True)
            await message.answer("❌ Could not build statistics, please try again later.")

    @router.message(Command("adaptive_delete"))
    async def cmd_adaptive_delete(message: Message, command: CommandObject) -> None:
        """Soft delete an adaptive link."""
        user = message.from_user
        if not user or not is_admin(user.id):
            return

        args = _get_command_args(command)
        if not args:
            await message.answer(
                "ℹ️ Usage: /adaptive_delete [link_id|slug]\n\n"
                "Deletes the adaptive link (soft delete).\n"
                "Scan history is kept, visitor records are dropped and the slug can be reused."
            )
            return

        link = await find_link(args.split()[0], str(user.id))
        if not link:
            await message.answer("❌ Link not found.")
            return

        deleted = await service.delete_link(link.link_id)

        if deleted:
            await message.answer(
                f"✅ Link deleted: {escape(link.name)}\n\n"
                f"Scan history is kept.\n"
                f"Slug '{escape(link.slug)}' can be reused.",
                parse_mode="HTML"
            )
        else:
            await message.answer("❌ Could not delete the link (maybe already deleted).")

    return router
