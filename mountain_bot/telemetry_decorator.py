"""Discord command telemetry decorator."""
from __future__ import annotations

import functools
import time
from typing import Any, Callable

import discord

from .telemetry import get_telemetry


def track_command(func: Callable) -> Callable:
    """Record usage, duration and failures of an app command callback."""

    @functools.wraps(func)
    async def wrapper(interaction: discord.Interaction, *args, **kwargs) -> Any:
        telemetry = get_telemetry()
        command_name = func.__name__
        user_id = str(interaction.user.id)
        guild_id = str(interaction.guild_id) if interaction.guild_id else "dm"
        start_time = time.time()
        success = False
        try:
            result = await func(interaction, *args, **kwargs)
            success = True
            return result
        except Exception as e:
            telemetry.track_error(
                type(e).__name__,
                command=command_name,
                user_id=user_id,
                error_details=str(e),
            )
            raise
        finally:
            telemetry.track_command(
                command_name,
                user_id,
                guild_id,
                success=success,
                duration_ms=(time.time() - start_time) * 1000,
            )

    return wrapper
