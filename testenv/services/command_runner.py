import asyncio
import logging
import os
from typing import Dict, List, Optional

from testenv.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Shell convention for "command not found"
COMMAND_NOT_FOUND = 127


class CommandRunner:
    """Runs the caller's test command with the connection string injected"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def build_env(self, connection_string: str, extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(extra_env or {})
        env[self.settings.uri_env_var] = connection_string
        return env

    async def run(
        self,
        command: List[str],
        connection_string: str,
        extra_env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None
    ) -> int:
        """
        Execute the test command and wait for it

        stdout/stderr are inherited so the test runner output streams
        straight to the caller.

        Returns:
            int: The child's exit code, unchanged
        """
        if not command:
            raise ValueError("No test command given")

        env = self.build_env(connection_string, extra_env)
        logger.info(f"Running test command: {' '.join(command)}")
        logger.debug(f"{self.settings.uri_env_var}={connection_string}")

        try:
            process = await asyncio.create_subprocess_exec(*command, env=env, cwd=cwd)
        except FileNotFoundError as e:
            logger.error(f"Test command not found: {e}")
            return COMMAND_NOT_FOUND

        exit_code = await process.wait()
        logger.info(f"Test command exited with code {exit_code}")
        return exit_code
