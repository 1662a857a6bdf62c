"""
Batch-job worker: run one pickled task and pickle its outcome.

Usage: python -m scvignettes.core.parallel.worker TASK_FILE RESULT_FILE
"""

import argparse
import logging
import pickle
import sys
import traceback

from .distributed import write_outcome

logger = logging.getLogger(__name__)


def run_task(task_file: str, result_file: str) -> int:
    """Run a task and write its outcome; failures while unpickling the task count as task failures"""
    try:
        with open(task_file, "rb") as f:
            payload = pickle.load(f)
        value = payload["func"](*payload.get("args", ()), **payload.get("kwargs", {}))
    except Exception as e:
        logger.error(f"Task in {task_file} failed: {e}")
        write_outcome(result_file, {"ok": False, "error": f"{type(e).__name__}: {e}", "traceback": traceback.format_exc()})
        return 1

    try:
        write_outcome(result_file, {"ok": True, "value": value})
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        logger.error(f"Result of task in {task_file} cannot be pickled: {e}")
        write_outcome(result_file, {"ok": False, "error": f"{type(e).__name__}: {e}", "traceback": traceback.format_exc()})
        return 1
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one pickled scvignettes task")
    parser.add_argument("task_file", help="Pickled task payload")
    parser.add_argument("result_file", help="Where to write the pickled outcome")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    return run_task(args.task_file, args.result_file)


if __name__ == "__main__":
    sys.exit(main())
