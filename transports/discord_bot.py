import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from sniper.engine import Engine

log = logging.getLogger(__name__)


def format_status(engine: Engine) -> str:
    active = engine.tickets.get_active_tickets()
    lines = [
        f"chain: {engine.settings.chain}{' (simulation)' if engine.settings.simulation_mode else ''}",
        f"pending wagers: {len(engine.tickets.pending_wagers)}",
        f"active tickets: {len(active)}",
    ]
    for ticket in active[:10]:
        lines.append(f"- <#{ticket.channel_id}> {ticket.state.value}")
    stats = engine.idempotency.stats()
    lines.append(
        "payments: {intent} intent / {broadcast} broadcast / {confirmed} confirmed".format(**stats)
    )
    return "\n".join(lines)


class DiscordTransport(commands.Bot):
    def __init__(self, engine: Engine, *, guild_id: Optional[int] = None):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        super().__init__(command_prefix="!", intents=intents, help_command=None)
        self.engine = engine
        self.guild_id = guild_id
        self._attached = False

    async def setup_hook(self) -> None:
        self.tree.add_command(self._status_command())
        if self.guild_id:
            guild = discord.Object(id=self.guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
        else:
            await self.tree.sync()

    def _status_command(self) -> app_commands.Command:
        @app_commands.command(name="sniperstatus", description="Show open tickets and payment counters")
        async def sniperstatus(interaction: discord.Interaction):
            if not self.engine.settings.is_middleman(interaction.user.id):
                await interaction.response.send_message("Not allowed.", ephemeral=True)
                return
            await interaction.response.send_message(format_status(self.engine), ephemeral=True)

        return sniperstatus

    async def on_ready(self):
        log.info("Discord bot ready as %s", self.user)
        # on_ready fires again after reconnects
        if not self._attached:
            self._attached = True
            await self.engine.attach(self)

    async def on_message(self, message: discord.Message):
        if not message or message.content is None:
            return
        await self.engine.handle_message(message)

    async def on_message_edit(self, before: discord.Message, after: discord.Message):
        if after.guild is None:
            return
        await self.engine.handle_edit(before, after)

    async def on_guild_channel_delete(self, channel: discord.abc.GuildChannel):
        await self.engine.handle_channel_delete(channel)


async def run_discord_bot(engine: Engine, token: str, guild_id: Optional[int] = None):
    bot = DiscordTransport(engine, guild_id=guild_id)
    try:
        await bot.start(token)
    finally:
        await bot.close()
