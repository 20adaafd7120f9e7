# scripts/replay_session.py
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from tagger.config import DEFAULT_STORE_PATH, TaggingConfig
from tagger.exceptions import TaggingError
from tagger.match_session import TaggingSession, create_match
from tagger.storage import JsonFileStore
from tagger.video import ManualClockVideo, OpenCVVideo

logger = logging.getLogger("replay_session")


# ----------------------------
# Event dispatch
# ----------------------------
def _seek(session: TaggingSession, event: Dict[str, Any]):
    if "t" in event:
        session.video.seek(float(event["t"]))


def apply_event(session: TaggingSession, event: Dict[str, Any]):
    """
    Feed one scripted UI event to the session.

    Timed events seek the video first, then let the machine sample the
    current time, exactly like a button press during playback.
    """
    action = event.get("action")

    if action == "shot":
        _seek(session, event)
        session.capture.record_shot()
    elif action == "end":
        _seek(session, event)
        session.capture.end_rally(event["condition"])
    elif action == "undo":
        session.capture.undo()
    elif action == "step_back":
        session.capture.step_back()
    elif action == "step_forward":
        session.capture.step_forward()
    elif action == "finish_phase1":
        session.finish_phase1()
    elif action == "answer":
        value = event["value"]
        session.annotation.answer(tuple(value) if isinstance(value, list) else value)
    elif action == "press":
        session.annotation.press(event["button"])
    elif action == "rotate":
        session.annotation.set_rotation(event["side"], bool(event.get("rotated", True)))
    elif action == "go_to":
        session.annotation.go_to_shot(int(event["shot"]))
    elif action == "frontier":
        session.annotation.return_to_frontier()
    elif action == "save":
        session.save()
    else:
        raise ValueError(f"Unknown action: {action}")


def load_script(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        script = json.load(f)

    if not isinstance(script.get("events"), list):
        raise ValueError("script must contain an 'events' list")
    return script


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(
        description="Replay a scripted tagging session (button presses) into a JSON store."
    )
    p.add_argument("--script", required=True, help="Path to event script json")
    p.add_argument("--store", default=str(DEFAULT_STORE_PATH), help="JSON store file")
    p.add_argument("--match-id", default=None, help="Existing match id (default: create from script)")
    p.add_argument("--redo", choices=["all", "phase2_only"], default=None)
    p.add_argument("--video", default=None, help="Optional source video; timestamps are read from it")
    p.add_argument("--no-auto-flush", action="store_true", help="Only write on explicit save events")
    p.add_argument("--debug", action="store_true")

    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    script = load_script(Path(args.script))
    store = JsonFileStore(Path(args.store))

    match_id = args.match_id
    if match_id is None:
        m = script.get("match", {})
        match_id = create_match(
            store,
            player_a_name=m.get("player_a_name", "Player A"),
            player_b_name=m.get("player_b_name", "Player B"),
            best_of=int(m.get("best_of", 5)),
            first_server=m.get("first_server"),
        )
        logger.info(f"Created match {match_id}")

    video = OpenCVVideo(args.video) if args.video else ManualClockVideo()

    session = TaggingSession(
        store,
        match_id,
        int(script.get("set_number", 1)),
        video=video,
        config=TaggingConfig(auto_flush=not args.no_auto_flush),
    )

    try:
        phase = session.open(redo=args.redo)

        if phase == "setup":
            setup = script.get("setup", {})
            first_server = setup.get("first_server")
            if first_server is None and setup.get("next_server") is None:
                first_server = session.suggested_first_server()

            session.start(
                first_server=first_server,
                next_server=setup.get("next_server"),
                starting_score=tuple(setup.get("starting_score", (0, 0))),
            )

        for event in tqdm(script["events"], desc="Replaying", unit="event"):
            apply_event(session, event)

        session.save()
    except TaggingError as e:
        logger.error(f"Replay stopped: {e}")
        return 1
    finally:
        if isinstance(video, OpenCVVideo):
            video.release()

    status = session.save_status
    logger.info(f"Session phase: {session.phase}, rallies: {len(session.rallies)}")
    if status is not None and status.pending:
        logger.warning(f"{status.pending} command(s) still pending: {status.last_error}")
    if session.match_result is not None:
        r = session.match_result
        logger.info(f"Match: {r.sets_a}-{r.sets_b}, winner={r.winner}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
