"""
外部コマンド実行モジュール

systemctl / squid / squidGuard / tail などの OS コマンドをシェル経由で実行し、
stdout・stderr・終了コードを CommandResult として返す。

- 非ゼロ終了やプロセス起動失敗でも例外を送出しない（結果で表現する）
- すべての呼び出しにタイムアウトを設け、超過時はプロセスを kill する
- 独立したコマンドは execute_many() で並行実行できる
"""

import asyncio
import logging
from typing import Iterable, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    """外部コマンドの実行結果"""

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timed_out: bool = False

    @property
    def output(self) -> str:
        """stdout を trim した文字列"""
        return self.stdout.strip()


class CommandExecutor:
    """シェルコマンド実行クラス"""

    def __init__(self, timeout: float = 30.0, shell: str = "/bin/bash"):
        """
        初期化

        Args:
            timeout: 既定のタイムアウト（秒）
            shell: コマンドを解釈するシェル
        """
        self.timeout = timeout
        self.shell = shell

    async def execute(
        self, command: str, timeout: Optional[float] = None
    ) -> CommandResult:
        """
        コマンドを実行

        Args:
            command: シェルに渡すコマンドライン
            timeout: タイムアウト（秒）。None の場合は既定値

        Returns:
            CommandResult（例外は送出しない）
        """
        budget = timeout if timeout is not None else self.timeout
        logger.debug(f"Executing command: {command}")

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                executable=self.shell,
            )
        except Exception as e:
            logger.error(f"Failed to start command: {command}: {e}")
            return CommandResult(success=False, stderr=str(e))

        try:
            # communicate() は stdout/stderr を終了待ちと並行して読み切る
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=budget)
        except asyncio.TimeoutError:
            logger.error(f"Command timed out after {budget}s, killing: {command}")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return CommandResult(
                success=False,
                stderr=f"Command timed out after {budget} seconds",
                exit_code=process.returncode,
                timed_out=True,
            )

        result = CommandResult(
            success=process.returncode == 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
        )
        if not result.success:
            logger.warning(
                f"Command exited with {process.returncode}: {command}, "
                f"stderr={result.stderr.strip()}"
            )
        return result

    async def execute_many(
        self, commands: Iterable[str], timeout: Optional[float] = None
    ) -> List[CommandResult]:
        """
        独立したコマンドを並行実行する（fan-out / fan-in）

        Args:
            commands: コマンドラインの列
            timeout: 各コマンドのタイムアウト（秒）

        Returns:
            入力順の CommandResult リスト
        """
        return list(
            await asyncio.gather(*(self.execute(cmd, timeout=timeout) for cmd in commands))
        )
