"""EVS Balance Bot - Main Bot.

Discord bot that checks prepaid aircon credit on the EVS meter portal,
answers balance / usage / rank questions, and sends a daily low-balance
reminder to users who opted in.
"""

from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from logger import logger
from config import (
    ALLOWED_USER_IDS,
    BOT_DEBUG,
    DATA_DIR,
    DISCORD_TOKEN,
    EVS_DEBUG,
    EVS_ENCRYPTION_KEY,
    EVS_METER_DISPLAYNAME,
    EVS_STORAGE_ON_DECRYPT_FAILURE,
    REMINDER_HOUR,
    REMINDER_MINUTE,
    REMINDER_TIMEZONE,
)
from domains.evs import EncryptedStorage, EvsClientPool, EvsCommands
from jobs import DailyRefreshJob, register_daily_refresh

# Initialize bot
intents = discord.Intents.default()
bot = commands.Bot(command_prefix="/", intents=intents)

# Initialize scheduler
scheduler = AsyncIOScheduler()

# Initialized in main() once the encryption key has been checked
evs_commands: Optional[EvsCommands] = None
daily_refresh: Optional[DailyRefreshJob] = None


async def send_to_channel(channel_id: int, text: str) -> None:
    """Post a message to a channel or DM, fetching it if not cached."""
    channel = bot.get_channel(channel_id)
    if not channel:
        channel = await bot.fetch_channel(channel_id)
    await channel.send(text)


@bot.event
async def on_ready():
    """Called when bot is connected and ready."""
    logger.info(f"Logged in as {bot.user}")

    # Sync slash commands with Discord
    try:
        synced = await bot.tree.sync()
        logger.info(f"Synced {len(synced)} slash commands")
    except Exception as e:
        logger.error(f"Failed to sync slash commands: {e}")

    if not scheduler.running:
        register_daily_refresh(scheduler, daily_refresh)
        scheduler.start()
        logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


@bot.tree.error
async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    """Last-resort handler: log the traceback, reply without details."""
    name = interaction.command.name if interaction.command else "?"
    logger.error(f"[cmd] /{name} crashed for user {interaction.user.id}: {error}", exc_info=error)
    message = "oops, something went wrong. try again?"
    if interaction.response.is_done():
        await interaction.followup.send(message, ephemeral=True)
    else:
        await interaction.response.send_message(message, ephemeral=True)


def _log_command(interaction: discord.Interaction) -> None:
    logger.info(f"[cmd] /{interaction.command.name} from user {interaction.user.id}")


@bot.tree.command(name="start", description="What this bot does")
async def start_command(interaction: discord.Interaction):
    _log_command(interaction)
    await interaction.response.send_message(evs_commands.handle_start())


@bot.tree.command(name="help", description="Show commands")
async def help_command(interaction: discord.Interaction):
    _log_command(interaction)
    await interaction.response.send_message(evs_commands.handle_help())


@bot.tree.command(name="login", description="Log in to the EVS portal (DM only)")
@app_commands.describe(username="EVS portal username (meter id)", password="EVS portal password")
async def login_command(interaction: discord.Interaction, username: str, password: str):
    _log_command(interaction)
    await interaction.response.defer(ephemeral=True)
    is_dm = interaction.guild is None
    reply = await evs_commands.handle_login(interaction.user.id, is_dm, username, password)
    await interaction.followup.send(reply, ephemeral=True)


@bot.tree.command(name="logout", description="Forget your EVS login")
async def logout_command(interaction: discord.Interaction):
    _log_command(interaction)
    await interaction.response.defer(ephemeral=True)
    reply = await evs_commands.handle_logout(interaction.user.id)
    await interaction.followup.send(reply, ephemeral=True)


@bot.tree.command(name="balance", description="Check your aircon credit")
async def balance_command(interaction: discord.Interaction):
    _log_command(interaction)
    await interaction.response.defer()
    reply = await evs_commands.handle_balance(interaction.user.id, interaction.channel_id)
    await interaction.followup.send(reply)


@bot.tree.command(name="usage", description="Daily usage (default: 7 days)")
@app_commands.describe(days="Number of days to look back (1-60)")
async def usage_command(interaction: discord.Interaction, days: Optional[int] = None):
    _log_command(interaction)
    await interaction.response.defer()
    reply = await evs_commands.handle_usage(interaction.user.id, interaction.channel_id, days)
    await interaction.followup.send(reply)


@bot.tree.command(name="avg", description="Average spend per day (default: 7 days)")
@app_commands.describe(days="Number of days to average over (1-60)")
async def avg_command(interaction: discord.Interaction, days: Optional[int] = None):
    _log_command(interaction)
    await interaction.response.defer()
    reply = await evs_commands.handle_avg(interaction.user.id, interaction.channel_id, days)
    await interaction.followup.send(reply)


@bot.tree.command(name="predict", description="Will you run out soon?")
async def predict_command(interaction: discord.Interaction):
    _log_command(interaction)
    await interaction.response.defer()
    reply = await evs_commands.handle_predict(interaction.user.id, interaction.channel_id)
    await interaction.followup.send(reply)


@bot.tree.command(name="rank", description="How your usage compares to neighbors")
async def rank_command(interaction: discord.Interaction):
    _log_command(interaction)
    await interaction.response.defer()
    reply = await evs_commands.handle_rank(interaction.user.id, interaction.channel_id)
    await interaction.followup.send(reply)


@bot.tree.command(name="meter", description="Meter details and month-to-date usage")
async def meter_command(interaction: discord.Interaction):
    _log_command(interaction)
    await interaction.response.defer()
    reply = await evs_commands.handle_meter(interaction.user.id, interaction.channel_id)
    await interaction.followup.send(reply)


@bot.tree.command(name="topup", description="Top up link")
async def topup_command(interaction: discord.Interaction):
    _log_command(interaction)
    await interaction.response.send_message(evs_commands.handle_topup(interaction.user.id), ephemeral=True)


@bot.tree.command(name="remind", description="Toggle the daily low-balance reminder")
async def remind_command(interaction: discord.Interaction):
    _log_command(interaction)
    reply = evs_commands.handle_remind(interaction.user.id, interaction.channel_id)
    await interaction.response.send_message(reply)


def main():
    """Entry point."""
    global evs_commands, daily_refresh

    if not DISCORD_TOKEN:
        logger.error("DISCORD_TOKEN not set")
        return

    try:
        storage = EncryptedStorage(
            EVS_ENCRYPTION_KEY,
            data_dir=DATA_DIR,
            on_decrypt_failure=EVS_STORAGE_ON_DECRYPT_FAILURE,
        )
    except ValueError as e:
        logger.error(f"Invalid storage configuration: {e}")
        return
    storage.load()

    pool = EvsClientPool(meter_displayname_override=EVS_METER_DISPLAYNAME, debug=EVS_DEBUG)
    evs_commands = EvsCommands(pool, storage, ALLOWED_USER_IDS)
    daily_refresh = DailyRefreshJob(
        pool,
        storage,
        notifier=send_to_channel,
        hour=REMINDER_HOUR,
        minute=REMINDER_MINUTE,
        timezone=REMINDER_TIMEZONE,
        debug=BOT_DEBUG,
    )

    if not ALLOWED_USER_IDS:
        logger.warning("ALLOWED_USER_IDS not set - anyone can use this bot")

    logger.info("Starting EVS Balance Bot...")
    bot.run(DISCORD_TOKEN)


if __name__ == "__main__":
    main()
