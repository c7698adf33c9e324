"""
git Subprocesses
================

[GIT] The core drives git through three commands:

- ``git ls-remote <url>``            ref listing, ``<sha>\\t<ref>`` per line
- ``git pack-objects --revs --thin`` pack generation for one wanted object
- ``git index-pack --stdin --fix-thin`` pack ingestion and verification

stderr of every command is inherited so git's own diagnostics reach the
user. Exit codes are the only feedback consumed from pack commands.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .errors import SubprocessFailure

logger = logging.getLogger(__name__)


CHUNK_SIZE = 64 * 1024


def parse_ref_line(line: str) -> Optional[Tuple[str, str]]:
    """``"<sha>\\t<ref>"`` -> (sha, ref); None for blank or malformed lines."""
    parts = line.strip().split()
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


class GitRunner:
    """Runs git commands without blocking the event loop."""

    def __init__(self, git: str = "git"):
        self.git = git

    async def ls_remote(self, url: Union[str, Path]) -> List[Tuple[str, str]]:
        """
        List refs of a repository path or URL.

        Raises:
            SubprocessFailure: git exited non-zero
            OSError: git could not be started
        """
        cmd = [self.git, "ls-remote", str(url)]
        proc = await asyncio.create_subprocess_exec(*cmd, stdout=asyncio.subprocess.PIPE)
        stdout, _ = await proc.communicate()

        if proc.returncode != 0:
            raise SubprocessFailure(cmd, proc.returncode)

        refs = []
        for line in stdout.decode("utf-8", errors="replace").splitlines():
            parsed = parse_ref_line(line)
            if parsed:
                refs.append(parsed)
        return refs

    async def pack_objects(
        self,
        repo: Union[str, Path],
        want: str,
        have: Optional[str],
        output: Path,
    ) -> int:
        """
        Write a pack with everything reachable from ``want`` into ``output``.

        When ``have`` is given the pack is thin against it.

        Returns:
            Exit code of git pack-objects
        """
        cmd = [
            self.git, "-C", str(repo), "pack-objects",
            "--revs", "--thin", "--stdout", "--delta-base-offset",
        ]
        revs = f"{want}\n"
        if have:
            revs += f"^{have}\n"

        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, "wb") as f:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=f,
            )
            await proc.communicate(revs.encode("ascii"))

        logger.debug(f"[GIT] pack-objects for {want} exited with {proc.returncode}")
        return proc.returncode

    async def index_pack(self, pack: Path) -> int:
        """
        Stream ``pack`` into ``git index-pack`` in the current repository.

        Returns:
            Exit code of git index-pack
        """
        cmd = [self.git, "index-pack", "--stdin", "-v", "--fix-thin"]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
        )

        try:
            with open(pack, "rb") as f:
                while True:
                    chunk = f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    proc.stdin.write(chunk)
                    await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"[GIT] index-pack stopped reading {pack}: {e}")
        finally:
            proc.stdin.close()

        return await proc.wait()
