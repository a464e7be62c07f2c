#!/usr/bin/env python3
"""
Coroutine Event Analyzer - replay a recorded event log and summarize it
"""

import json
import sys
from coroutine_viz import EngineConfig, SessionRegistry
from coroutine_viz.processors import EventFileProcessor
from coroutine_viz.web import prepare_results


def main(argv=None):
    import argparse
    parser = argparse.ArgumentParser(
        description='Replay coroutine lifecycle events and summarize the reconstructed hierarchy.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python analyze_events.py events.json
  python analyze_events.py events.jsonl -o results.json
  python analyze_events.py events.json --session demo --no-suspension-points
        """
    )
    parser.add_argument('input_file', help='Path to the event log (.json, .jsonl, .ndjson)')
    parser.add_argument('-o', '--output', dest='output_file', default=None,
                        help='Write the full JSON results to this file')
    parser.add_argument('--session', dest='session_id', default=None,
                        help='Only replay this session id')
    parser.add_argument('--no-infer-waiting', action='store_true',
                        help='Do not infer WAITING_FOR_CHILDREN from body-completed events')
    parser.add_argument('--no-suspension-points', action='store_true',
                        help='Do not record suspension point history')
    args = parser.parse_args(argv)

    config = EngineConfig(
        infer_waiting_from_children=not args.no_infer_waiting,
        record_suspension_points=not args.no_suspension_points,
    )
    registry = SessionRegistry(config)

    try:
        print(f"\nConfiguration:")
        print(f"  Input file: {args.input_file}")
        print(f"  Infer waiting-for-children: {not args.no_infer_waiting}")
        print(f"  Record suspension points: {not args.no_suspension_points}\n")

        sessions = EventFileProcessor.process_file(args.input_file)
        if args.session_id is not None:
            sessions = {k: v for k, v in sessions.items() if k == args.session_id}
            if not sessions:
                print(f"Error: Session '{args.session_id}' not found in '{args.input_file}'.")
                return 1

        results = {}
        for session_id, records in sessions.items():
            session = registry.get_or_create(session_id)
            session.apply_many(records)
            session.report_summary()
            results[session_id] = prepare_results(session)

        if args.output_file:
            with open(args.output_file, 'w', encoding='utf-8') as f:
                json.dump(results, f, indent=2)
            print(f"\nResults written to {args.output_file}")

        print(f"\n✓ Analysis complete!")
        return 0
    except FileNotFoundError:
        print(f"Error: File '{args.input_file}' not found.")
        return 1
    except Exception as e:
        print(f"Error: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
