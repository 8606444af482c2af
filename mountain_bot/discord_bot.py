"""Discord bot entry point for the mountain bot."""
from __future__ import annotations

import atexit
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .models import BugReport, MountainRecord, QuizQuestion
from .providers import ProviderUnavailable
from .providers.overpass import OverpassClient
from .providers.weather import describe_weather, static_map_url
from .quiz import QuizBuildError
from .service import MountainDetails, MountainService, SubmissionError, UsageReport
from .sessions import NotSessionOwner, QuizResult, SessionNotFound
from .telemetry import get_telemetry
from .telemetry_decorator import track_command

logger = logging.getLogger(__name__)

_MAX_MESSAGE_LENGTH = 1900
_MAX_BUTTON_LABEL = 80
_QUIZ_VIEW_TIMEOUT = 300
_DEFAULT_MAP_CENTER = (35.681236, 139.767125)


def _clamp_text(text: str, limit: int = _MAX_MESSAGE_LENGTH) -> str:
    """Ensure Discord-compatible message length."""

    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def _format_message(lines: Iterable[Optional[str]]) -> str:
    """Join message lines and clamp to Discord limits."""

    message = "\n".join(line for line in lines if line is not None)
    return _clamp_text(message)


def _format_record(record: MountainRecord) -> str:
    name = f"{record.name}（{record.name_reading}）" if record.name_reading else record.name
    parts = [f"**{name}**"]
    if record.elevation is not None:
        parts.append(f"{record.elevation} m")
    if record.regions:
        parts.append("・".join(record.regions))
    parts.append(f"[{record.source_label}]")
    parts.append(f"`{record.id}`")
    return "- " + " ".join(parts)


def _format_details(details: MountainDetails) -> List[str]:
    record = details.record
    lines = [f"**{record.name}**" + (f"（{record.name_reading}）" if record.name_reading else "")]
    lines.append(f"標高: {record.elevation if record.elevation is not None else '不明'} m")
    if record.regions:
        lines.append(f"所在地: {'・'.join(record.regions)}")
    if record.coordinates:
        lines.append(f"座標: {record.coordinates[0]}, {record.coordinates[1]}")
    if record.tags:
        lines.append(f"タグ: {', '.join(record.tags)}")
    if record.description:
        lines.append(_clamp_text(record.description, 400))
    lines.append(f"出典: {record.source_label}")
    if details.added_by:
        added_by = f"<@{details.added_by}>" if details.added_by.isdigit() else details.added_by
        lines.append(f"追加者: {added_by}")
    if record.source_label == "OSM":
        lines.append(OverpassClient.license_text())
    if details.page_url:
        lines.append(details.page_url)
    if record.gsi_url:
        lines.append(f"地理院地図: {record.gsi_url}")
    if details.nearby:
        lines.append("周辺の山: " + "、".join(m.name for m in details.nearby[:5]))
    if details.image_url:
        lines.append(details.image_url)
    return lines


def _format_question(question: QuizQuestion, number: int, total: int) -> str:
    lines = [f"**第{number}問 / {total}**", question.prompt, ""]
    lines.extend(f"{index + 1}. {choice}" for index, choice in enumerate(question.choices))
    return _format_message(lines)


def _format_result(result: QuizResult) -> str:
    lines = [f"{result.display_name} さんの結果: {result.correct_count} / {result.total_questions} 問正解"]
    lines.append(f"回答時間: {result.total_time_ms / 1000:.1f} 秒")
    if result.score is not None:
        lines.append(f"スコア: {result.score}" + ("（自己ベスト更新！）" if result.stored else ""))
    else:
        lines.append(f"{result.answered} 問回答した時点で終了しました（スコアは記録されません）。")
    return _format_message(lines)


def _is_admin(interaction: discord.Interaction) -> bool:
    permissions = getattr(interaction, "permissions", None)
    if permissions is not None and permissions.administrator:
        return True
    role_raw = os.environ.get("ADMIN_ROLE_ID")
    if not role_raw or not role_raw.isdigit():
        return False
    roles = getattr(interaction.user, "roles", None) or []
    return any(role.id == int(role_raw) for role in roles)


def _parse_ids(raw: str) -> List[int]:
    return [int(part) for part in raw.replace("、", ",").split(",") if part.strip().isdigit()]


_HELP_LINES = (
    "**基本コマンド**",
    "/ping - 疎通確認",
    "/help - このヘルプを表示",
    "",
    "**山情報**",
    "/mountain_search - 山を名前で検索",
    "/mountain_info - 山の詳細を表示",
    "/mountain_add - 山情報を投稿（管理者承認制）",
    "/weather_forecast - 山や地名の天気予報",
    "/map_route - 座標の静的地図を表示",
    "",
    "**クイズ**",
    "/quiz_start - 山クイズ開始（10問）",
    "/quiz_rank - クイズランキング表示",
    "",
    "**その他**",
    "/report - botの不具合を報告",
    "/admin_approve - 管理者用：投稿山の承認",
    "/admin_stats - 管理者用：利用状況と不具合報告",
)


def _help_text() -> str:
    return _format_message(["📚 コマンド一覧", "", *_HELP_LINES])


def _map_message(lat: float, lon: float) -> str:
    return f"静的地図: {static_map_url((lat, lon), 12, '700x400', markers=[(lat, lon)])}"


def _format_usage(report: Optional[UsageReport], bug_reports: List[BugReport]) -> str:
    lines = []
    if report is None:
        lines.append("利用統計は無効です。")
    else:
        lines.append(f"**過去 {report.hours} 時間の利用状況**")
        if not report.commands:
            lines.append("コマンドの利用はありません。")
        for name, stats in sorted(report.commands.items(), key=lambda kv: -kv[1]["usage_count"]):
            lines.append(
                f"- /{name}: {stats['usage_count']} 回"
                f"（成功率 {stats['success_rate']:.0%}, {stats['unique_users']} 人）"
            )
        if report.provider_failures:
            lines.append("**外部サービスの失敗**")
            lines.extend(f"- {provider}: {count} 回" for provider, count in report.provider_failures.items())
    lines.append("**最近の不具合報告**")
    if not bug_reports:
        lines.append("報告はありません。")
    lines.extend(f"- #{item.id} {item.title}（<@{item.user_id}>）" for item in bug_reports)
    return _format_message(lines)


class QuizView(discord.ui.View):
    """Answer buttons for the current question plus a quit button."""

    def __init__(self, service: MountainService, session_key: str, question: QuizQuestion) -> None:
        super().__init__(timeout=_QUIZ_VIEW_TIMEOUT)
        self.service = service
        self.session_key = session_key
        for index, choice in enumerate(question.choices):
            button = discord.ui.Button(
                label=_clamp_text(f"{index + 1}. {choice}", _MAX_BUTTON_LABEL),
                style=discord.ButtonStyle.primary,
                row=index // 2,
            )
            button.callback = self._answer_callback(index)
            self.add_item(button)
        quit_button = discord.ui.Button(label="やめる", style=discord.ButtonStyle.danger, row=2)
        quit_button.callback = self._quit
        self.add_item(quit_button)

    def _answer_callback(self, index: int):
        async def callback(interaction: discord.Interaction) -> None:
            await self._answer(interaction, index)

        return callback

    async def _answer(self, interaction: discord.Interaction, index: int) -> None:
        try:
            outcome = self.service.answer(self.session_key, index, str(interaction.user.id))
        except NotSessionOwner:
            await interaction.response.send_message("このクイズは開始したユーザーのみ回答できます。", ephemeral=True)
            return
        except SessionNotFound:
            await interaction.response.edit_message(content="クイズの有効期限が切れました。", view=None)
            self.stop()
            return

        question = outcome.question
        if outcome.correct:
            feedback = "正解！"
        else:
            feedback = f"不正解… 正解は「{question.answer_text or question.correct_choice}」"
        self.stop()
        if outcome.result is not None:
            await interaction.response.edit_message(
                content=_format_message([feedback, "", _format_result(outcome.result)]),
                view=None,
            )
            return

        session = self.service.sessions.get(self.session_key)
        next_question = self.service.present_question(self.session_key)
        await interaction.response.edit_message(
            content=_format_message(
                [feedback, "", _format_question(next_question, session.current_index + 1, len(session.questions))]
            ),
            view=QuizView(self.service, self.session_key, next_question),
        )

    async def _quit(self, interaction: discord.Interaction) -> None:
        try:
            session = self.service.sessions.get(self.session_key)
            if str(interaction.user.id) != session.owner_id:
                await interaction.response.send_message("このクイズは開始したユーザーのみ操作できます。", ephemeral=True)
                return
            result = self.service.quit_quiz(self.session_key)
        except SessionNotFound:
            await interaction.response.edit_message(content="クイズの有効期限が切れました。", view=None)
            self.stop()
            return
        self.stop()
        await interaction.response.edit_message(content=_format_result(result), view=None)


class MountainAddModal(discord.ui.Modal, title="山情報の追加"):
    mountain_name = discord.ui.TextInput(label="山名（漢字・カタカナ・ひらがな）", placeholder="富士ふじフジ", max_length=100)
    elevation = discord.ui.TextInput(label="標高 (m)", required=False, max_length=10)
    location = discord.ui.TextInput(label="場所（緯度,経度 または 地名）", required=False, max_length=100)
    description = discord.ui.TextInput(
        label="説明", style=discord.TextStyle.paragraph, required=False, max_length=1000
    )

    def __init__(self, service: MountainService) -> None:
        super().__init__()
        self.service = service

    async def on_submit(self, interaction: discord.Interaction) -> None:
        try:
            created = await self.service.submit_mountain(
                name=self.mountain_name.value,
                added_by=str(interaction.user.id),
                elevation=self.elevation.value,
                location=self.location.value,
                description=self.description.value,
            )
        except SubmissionError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        await interaction.response.send_message(
            f"山「{created.name}」を登録しました（管理者承認待ち, ID: {created.id}）。", ephemeral=True
        )


class BugReportModal(discord.ui.Modal, title="不具合報告"):
    report_title = discord.ui.TextInput(label="タイトル（簡潔に）", placeholder="例：クイズが開始されない", max_length=100)
    details = discord.ui.TextInput(
        label="詳細な説明",
        style=discord.TextStyle.paragraph,
        placeholder="発生した現象、どうしたいのかを記入してください",
        max_length=1000,
    )
    steps = discord.ui.TextInput(
        label="再現手順（任意）", style=discord.TextStyle.paragraph, required=False, max_length=500
    )

    def __init__(self, service: MountainService) -> None:
        super().__init__()
        self.service = service

    async def on_submit(self, interaction: discord.Interaction) -> None:
        try:
            report = self.service.report_bug(
                user_id=str(interaction.user.id),
                title=self.report_title.value,
                details=self.details.value,
                steps=self.steps.value,
            )
        except SubmissionError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        await interaction.response.send_message(f"不具合報告を受け付けました（ID: {report.id}）。", ephemeral=True)


def build_bot(db_path: Path, intents: Optional[discord.Intents] = None) -> commands.Bot:
    intents = intents or discord.Intents.default()
    bot = commands.Bot(command_prefix="/", intents=intents)
    service = MountainService(db_path, telemetry=get_telemetry())
    setattr(bot, "mountain_service", service)
    atexit.register(service.close)

    @bot.event
    async def on_ready() -> None:
        logger.info("Mountain bot connected as %s", bot.user)
        logger.info("Pruned %d old telemetry events", service.prune_telemetry())
        try:
            synced = await bot.tree.sync()
            logger.info("Synced %d commands", len(synced))
        except discord.HTTPException:
            logger.exception("Failed to sync commands")

    @app_commands.command(name="ping", description="応答速度を確認します")
    @track_command
    async def ping(interaction: discord.Interaction) -> None:
        await interaction.response.send_message(f"Pong! ({bot.latency * 1000:.0f} ms)", ephemeral=True)

    @app_commands.command(name="mountain_search", description="山を名前で検索します")
    @track_command
    @app_commands.describe(name="山名（漢字・かな・カナ）", limit="最大件数")
    async def mountain_search(
        interaction: discord.Interaction,
        name: str,
        limit: app_commands.Range[int, 1, 50] = 10,
    ) -> None:
        await interaction.response.defer()
        results = await service.search(name=name, limit=limit)
        if not results:
            if service.last_search_failed:
                message = "検索中にエラーが発生しました。しばらくしてから再度お試しください。"
            else:
                message = f"「{name}」に該当する山は見つかりませんでした。"
            await interaction.followup.send(message)
            return
        lines = [f"「{name}」の検索結果（{len(results)} 件）"]
        lines.extend(_format_record(record) for record in results)
        await interaction.followup.send(_format_message(lines))

    @app_commands.command(name="mountain_info", description="山の詳細を表示します")
    @track_command
    @app_commands.describe(identifier="山の ID または名前")
    async def mountain_info(interaction: discord.Interaction, identifier: str) -> None:
        await interaction.response.defer()
        details = await service.info(identifier)
        if details is None:
            await interaction.followup.send(f"「{identifier}」の情報は見つかりませんでした。")
            return
        await interaction.followup.send(_format_message(_format_details(details)))

    @app_commands.command(name="mountain_add", description="新しい山情報を投稿します（管理者承認制）")
    @track_command
    async def mountain_add(interaction: discord.Interaction) -> None:
        await interaction.response.send_modal(MountainAddModal(service))

    @app_commands.command(name="admin_approve", description="投稿された山情報を承認・却下します")
    @track_command
    @app_commands.describe(action="list / approve / reject", ids="対象 ID（カンマ区切り）")
    @app_commands.choices(
        action=[
            app_commands.Choice(name="一覧", value="list"),
            app_commands.Choice(name="承認", value="approve"),
            app_commands.Choice(name="却下", value="reject"),
        ]
    )
    async def admin_approve(interaction: discord.Interaction, action: str = "list", ids: str = "") -> None:
        if not _is_admin(interaction):
            await interaction.response.send_message("このコマンドは管理者のみ使用できます。", ephemeral=True)
            return
        if action == "list":
            pending = service.pending_submissions()
            if not pending:
                await interaction.response.send_message("承認待ちの山情報はありません。", ephemeral=True)
                return
            lines = ["承認待ちの山情報:"]
            for item in pending:
                lines.append(
                    f"- ID {item.id}: **{item.name}**"
                    + (f"（{item.name_reading}）" if item.name_reading else "")
                    + f" 標高 {item.elevation if item.elevation is not None else '不明'} m"
                    + f" 追加者 <@{item.added_by}>"
                )
            await interaction.response.send_message(_format_message(lines), ephemeral=True)
            return
        targets = _parse_ids(ids)
        if not targets:
            await interaction.response.send_message("ID を指定してください。", ephemeral=True)
            return
        if action == "approve":
            count = service.approve(targets)
            message = f"{count} 件を承認しました。"
        else:
            count = service.reject(targets)
            message = f"{count} 件を却下しました。"
        await interaction.response.send_message(message, ephemeral=True)

    @app_commands.command(name="quiz_start", description="山クイズを開始します")
    @track_command
    @app_commands.describe(new_set="新しい問題セットを作成する")
    async def quiz_start(interaction: discord.Interaction, new_set: bool = False) -> None:
        await interaction.response.defer()
        try:
            questions = await service.prepare_quiz() if new_set else None
            session_key, question = await service.start_quiz(
                str(interaction.user.id),
                interaction.user.display_name,
                questions=questions,
            )
        except QuizBuildError:
            logger.exception("Quiz could not be built")
            await interaction.followup.send("クイズを作成できませんでした。しばらくしてから再度お試しください。")
            return
        total = len(service.sessions.get(session_key).questions)
        await interaction.followup.send(
            _format_question(question, 1, total),
            view=QuizView(service, session_key, question),
        )

    @app_commands.command(name="quiz_rank", description="クイズのランキングを表示します")
    @track_command
    async def quiz_rank(interaction: discord.Interaction) -> None:
        scores = service.ranking(10)
        if not scores:
            await interaction.response.send_message("まだ記録がありません。")
            return
        lines = ["**クイズランキング**"]
        for position, record in enumerate(scores, start=1):
            lines.append(
                f"{position}. {record.display_name} - {record.score} 点（{record.total_time_ms / 1000:.1f} 秒）"
            )
        await interaction.response.send_message(_format_message(lines))

    @app_commands.command(name="weather_forecast", description="山や地名の天気予報を表示します")
    @track_command
    @app_commands.describe(place="山名・ID・地名", days="日数 (1-7)")
    async def weather_forecast(
        interaction: discord.Interaction,
        place: str,
        days: app_commands.Range[int, 1, 7] = 3,
    ) -> None:
        await interaction.response.defer()
        try:
            found = await service.forecast(place, days)
        except ProviderUnavailable as exc:
            logger.warning("Forecast for %s failed: %s", place, exc)
            await interaction.followup.send("天気予報を取得できませんでした。")
            return
        if found is None:
            await interaction.followup.send(f"「{place}」の位置を特定できませんでした。")
            return
        label, weather = found
        lines = [f"**{label}** の天気予報（{weather.latitude}, {weather.longitude}）"]
        for day in weather.daily:
            lines.append(
                f"{day.day.isoformat()} {describe_weather(day.weather_code)}"
                f" 最高 {day.temperature_max if day.temperature_max is not None else '-'}℃"
                f" / 最低 {day.temperature_min if day.temperature_min is not None else '-'}℃"
                f" 降水 {day.precipitation_sum if day.precipitation_sum is not None else '-'} mm"
            )
        await interaction.followup.send(_format_message(lines))

    @app_commands.command(name="help", description="コマンド一覧を表示します")
    @track_command
    async def help_command(interaction: discord.Interaction) -> None:
        await interaction.response.send_message(_help_text(), ephemeral=True)

    @app_commands.command(name="report", description="botの不具合を報告します")
    @track_command
    async def report(interaction: discord.Interaction) -> None:
        await interaction.response.send_modal(BugReportModal(service))

    @app_commands.command(name="map_route", description="座標の静的地図を表示します")
    @track_command
    @app_commands.describe(lat="緯度（省略時は東京駅）", lon="経度（省略時は東京駅）")
    async def map_route(
        interaction: discord.Interaction,
        lat: app_commands.Range[float, -90.0, 90.0] = _DEFAULT_MAP_CENTER[0],
        lon: app_commands.Range[float, -180.0, 180.0] = _DEFAULT_MAP_CENTER[1],
    ) -> None:
        await interaction.response.send_message(_map_message(lat, lon))

    @app_commands.command(name="admin_stats", description="利用状況と不具合報告を表示します（管理者のみ）")
    @track_command
    async def admin_stats(interaction: discord.Interaction) -> None:
        if not _is_admin(interaction):
            await interaction.response.send_message("このコマンドは管理者のみ使用できます。", ephemeral=True)
            return
        message = _format_usage(service.usage_report(), service.recent_bug_reports())
        await interaction.response.send_message(message, ephemeral=True)

    bot.tree.add_command(ping)
    bot.tree.add_command(mountain_search)
    bot.tree.add_command(mountain_info)
    bot.tree.add_command(mountain_add)
    bot.tree.add_command(admin_approve)
    bot.tree.add_command(quiz_start)
    bot.tree.add_command(quiz_rank)
    bot.tree.add_command(weather_forecast)
    bot.tree.add_command(help_command)
    bot.tree.add_command(report)
    bot.tree.add_command(map_route)
    bot.tree.add_command(admin_stats)
    return bot


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    token = os.environ.get("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable must be set")
    db_path = Path(os.environ.get("MOUNTAIN_BOT_DB", "mountain_bot.db"))
    bot = build_bot(db_path)
    bot.run(token)


__all__ = ["BugReportModal", "QuizView", "build_bot", "main"]
