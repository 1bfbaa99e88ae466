from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord import app_commands

from .controller import utc_now
from .cycle_time import parse_clock
from .errors import PersistenceFailure, ScanTrackError
from .models import ScanKind, WorkOrder
from .reporter import format_seconds, format_toggle

if TYPE_CHECKING:
    from .main import ScanStationBot


SCAN_DIRECTIONS = [
    app_commands.Choice(name="toggle", value="toggle"),
    app_commands.Choice(name="in", value=ScanKind.IN.value),
    app_commands.Choice(name="out", value=ScanKind.OUT.value),
]


def register_commands(bot: ScanStationBot) -> None:
    """Register all slash commands on the bot. Called once during setup."""
    guild_scope = discord.Object(id=bot.config.guild_id)

    async def reject(interaction: discord.Interaction, exc: Exception) -> None:
        if isinstance(exc, PersistenceFailure):
            bot.logger.error("Store failure while handling /%s: %s", interaction.command.name if interaction.command else "?", exc)
        await interaction.response.send_message(f"Rejected: {exc}", ephemeral=True)

    def in_configured_guild(interaction: discord.Interaction) -> bool:
        return interaction.guild is not None and interaction.guild.id == bot.config.guild_id

    @bot.tree.command(name="status", description="Show station bot status", guild=guild_scope)
    async def status(interaction: discord.Interaction) -> None:
        now_local = utc_now().astimezone(bot.config.timezone)
        lines = [
            "Scan station bot: online",
            f"Guild ID: `{bot.config.guild_id}`",
            f"Report channel ID: `{bot.config.report_channel_id}`",
            f"Timezone: `{bot.config.timezone.key}`",
            f"Current local time: `{now_local.isoformat()}`",
            f"Scan debounce: `{bot.config.scan_debounce_ms} ms`",
            f"Default break: `{bot.config.default_break_start}-{bot.config.default_break_end}`",
        ]
        await interaction.response.send_message("\n".join(lines), ephemeral=True)

    @bot.tree.command(name="work-order-new", description="Register a work order for scanning", guild=guild_scope)
    @app_commands.describe(
        work_order="Work order number",
        line="Production line id",
        product="Product id",
        break_start="Daily break start, HH:MM",
        break_end="Daily break end, HH:MM",
    )
    async def work_order_new(
        interaction: discord.Interaction,
        work_order: str,
        line: str,
        product: str,
        break_start: str | None = None,
        break_end: str | None = None,
    ) -> None:
        if not in_configured_guild(interaction):
            await interaction.response.send_message("This command can only be used in the configured server.", ephemeral=True)
            return

        start = break_start or bot.config.default_break_start
        end = break_end or bot.config.default_break_end
        if parse_clock(start) is None or parse_clock(end) is None:
            await interaction.response.send_message("Break times must look like `12:00`.", ephemeral=True)
            return

        if bot.db.get_work_order(work_order) is not None:
            await interaction.response.send_message(f"Work order `{work_order}` already exists.", ephemeral=True)
            return

        try:
            bot.db.create_work_order(
                WorkOrder(id=work_order, line_id=line, product_id=product, break_start_time=start, break_end_time=end)
            )
        except ScanTrackError as exc:
            await reject(interaction, exc)
            return

        bot.logger.info("Work order %s registered on line %s", work_order, line)
        await interaction.response.send_message(
            f"Work order `{work_order}` ready for scanning (break `{start}-{end}`).",
            ephemeral=True,
        )

    @bot.tree.command(name="scan", description="Scan a unit serial in or out", guild=guild_scope)
    @app_commands.describe(work_order="Work order number", serial="Unit serial barcode", direction="Defaults to toggle")
    @app_commands.choices(direction=SCAN_DIRECTIONS)
    async def scan(
        interaction: discord.Interaction,
        work_order: str,
        serial: str,
        direction: app_commands.Choice[str] | None = None,
    ) -> None:
        if not in_configured_guild(interaction):
            await interaction.response.send_message("This command can only be used in the configured server.", ephemeral=True)
            return

        employee_id = str(interaction.user.id)
        try:
            if direction is None or direction.value == "toggle":
                result = bot.controller.toggle(work_order, serial, employee_id=employee_id)
            else:
                result = bot.controller.record_scan(work_order, serial, ScanKind(direction.value), employee_id=employee_id)
        except (ScanTrackError, ValueError) as exc:
            await reject(interaction, exc)
            return

        await interaction.response.send_message(format_toggle(serial.strip(), result), ephemeral=True)

    @bot.tree.command(name="summary", description="Show the live summary of a work order", guild=guild_scope)
    @app_commands.describe(work_order="Work order number")
    async def summary(interaction: discord.Interaction, work_order: str) -> None:
        if not in_configured_guild(interaction):
            await interaction.response.send_message("This command can only be used in the configured server.", ephemeral=True)
            return

        try:
            content = bot.reporter.build_for(work_order)
        except ScanTrackError as exc:
            await reject(interaction, exc)
            return

        await interaction.response.send_message(content, ephemeral=True)

    @bot.tree.command(name="delete-session", description="Delete a unit's IN/OUT pair", guild=guild_scope)
    @app_commands.describe(work_order="Work order number", session_id="Session id shown by /summary")
    async def delete_session(interaction: discord.Interaction, work_order: str, session_id: str) -> None:
        if not in_configured_guild(interaction):
            await interaction.response.send_message("This command can only be used in the configured server.", ephemeral=True)
            return

        try:
            deleted = bot.controller.delete_session(work_order, session_id)
        except ScanTrackError as exc:
            await reject(interaction, exc)
            return

        if not deleted:
            await interaction.response.send_message(f"Session `{session_id}` was already gone.", ephemeral=True)
            return
        await interaction.response.send_message(f"Session `{session_id}` deleted.", ephemeral=True)

    @bot.tree.command(name="pause", description="Pause cycle timing on a work order", guild=guild_scope)
    @app_commands.describe(work_order="Work order number")
    async def pause(interaction: discord.Interaction, work_order: str) -> None:
        if not in_configured_guild(interaction):
            await interaction.response.send_message("This command can only be used in the configured server.", ephemeral=True)
            return

        try:
            window = bot.controller.start_pause(work_order)
        except ScanTrackError as exc:
            await reject(interaction, exc)
            return

        started = window.start_at.astimezone(bot.config.timezone).strftime("%H:%M:%S")
        await interaction.response.send_message(f"Work order `{work_order}` paused at `{started}`.", ephemeral=True)

    @bot.tree.command(name="resume", description="Resume cycle timing on a work order", guild=guild_scope)
    @app_commands.describe(work_order="Work order number")
    async def resume(interaction: discord.Interaction, work_order: str) -> None:
        if not in_configured_guild(interaction):
            await interaction.response.send_message("This command can only be used in the configured server.", ephemeral=True)
            return

        try:
            window = bot.controller.end_pause(work_order)
        except ScanTrackError as exc:
            await reject(interaction, exc)
            return

        paused_for = int((window.end_at - window.start_at).total_seconds())
        await interaction.response.send_message(
            f"Work order `{work_order}` resumed after `{format_seconds(paused_for)}`.",
            ephemeral=True,
        )

    @bot.tree.command(name="close-work-order", description="Complete a work order and post its summary", guild=guild_scope)
    @app_commands.describe(
        work_order="Work order number",
        confirmed_units="Override the scanned completed quantity",
        workers="Actual workers count at close",
    )
    async def close_work_order(
        interaction: discord.Interaction,
        work_order: str,
        confirmed_units: int | None = None,
        workers: int | None = None,
    ) -> None:
        if not in_configured_guild(interaction):
            await interaction.response.send_message("This command can only be used in the configured server.", ephemeral=True)
            return

        try:
            closed = bot.controller.close_work_order(work_order, confirmed_units=confirmed_units, workers=workers)
        except ScanTrackError as exc:
            await reject(interaction, exc)
            return

        if bot.report_channel is not None:
            try:
                await bot.reporter.post_summary(bot.report_channel, work_order)
            except Exception:  # pragma: no cover - runtime safety
                bot.logger.exception("Failed to post close summary for %s", work_order)

        await interaction.response.send_message(
            f"Work order `{work_order}` completed with `{closed.completed_units}` units.",
            ephemeral=True,
        )
