"""
Run a handful of scripts through safescript.

Demonstrates the engine as a service would use it: several scripts compete
for a small number of sandbox slots, one of them misbehaves, and outputs are
kept in a TTL-scoped artifact directory.

Requires a running Docker (or Colima, Podman, ...) daemon.
"""

import asyncio
import logging
import tempfile
from pathlib import Path

from safescript import AdmissionExhausted, EngineConfig, create_engine

SCRIPTS = {
    "sum": "import csv\nrows = list(csv.reader(open('/data/input_0/numbers.csv')))\nprint(sum(int(r[0]) for r in rows))",
    "report": "open('/output/report.txt', 'w').write('all good\\n')\nprint('wrote report')",
    "crash": "raise ValueError('bad data')",
    "spin": "while True:\n    pass",
}


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    work = Path(tempfile.mkdtemp(prefix="safescript_demo_"))
    numbers = work / "numbers.csv"
    numbers.write_text("1\n2\n3\n")

    config = EngineConfig(
        image="python:3.12-slim",
        max_workers=2,
        execution_timeout=3.0,
        output_dir=work / "outputs",
        artifact_ttl=600,
    )
    engine = await create_engine(config)
    try:
        await engine.sandbox.wait_until_ready(300)

        async def run(name: str, script: str) -> None:
            try:
                result = await engine.run_script(script, [numbers])
            except AdmissionExhausted as e:
                print(f"[{name}] rejected: {e}")
                return
            status = "ok" if result.success else f"{result.error_kind.value}: {result.error}"
            print(f"[{name}] exit={result.exit_code} {status}")
            if result.stdout:
                print(f"[{name}] stdout: {result.stdout.strip()}")
            if result.execution_id:
                print(f"[{name}] outputs in {result.execution_id}: {', '.join(result.output_files)}")

        await asyncio.gather(*(run(name, script) for name, script in SCRIPTS.items()))
        print(engine.stats())
    finally:
        await engine.close()


if __name__ == "__main__":
    asyncio.run(main())
