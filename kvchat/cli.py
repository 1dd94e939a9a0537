"""
kvchat :: CLI

Usage:
    kvchat chat <model_dir> [--provider cuda] [--max-tokens 9999] [--profiler]
    kvchat serve <model_dir> [--port 8000] [--host 127.0.0.1]
    kvchat check <model_dir>
    kvchat bench [--num-layers 4] [--tokens 128]

Chat commands:
    /reset           drop attached context
    /context <file>  prepend a text file to following queries
    /raw <text>      continue text verbatim (no chat template)
    /quit            exit
    Ctrl-C           stop the reply in progress

INL - 2025
"""

import argparse
import signal
import sys


def _session_options(args):
    from kvchat.core.config import SessionOptions
    from kvchat.core.tensors import Location

    return SessionOptions(
        provider=args.provider,
        profiler=args.profiler,
        verbose=args.verbose,
        threads=args.threads,
        fp16=not args.no_fp16,
        show_special=args.show_special,
        max_tokens=args.max_tokens,
        model_file=args.model_file,
        cache_placement=Location(args.cache_placement),
    )


def _setup_logging(args):
    from kvchat.core.logging import setup_logging
    setup_logging(level=args.log_level, json_output=args.json_logs, log_file=args.log_file)


def cmd_chat(args):
    """Interactive chat loop."""
    from kvchat.core.errors import KVChatError
    from kvchat.engine.session import ChatSession

    _setup_logging(args)
    session = ChatSession.load(args.model_dir, _session_options(args))
    print(f"kvchat :: {session.model_name} ready (Ctrl-C stops a reply, /quit exits)")

    def _on_sigint(signum, frame):
        session.abort()

    try:
        while True:
            try:
                line = input("\n> ").strip()
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if not line:
                continue

            continuation = False
            if line == "/quit":
                break
            if line == "/reset":
                session.clear_context()
                print("  context cleared")
                continue
            if line.startswith("/context "):
                path = line[len("/context "):].strip()
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        session.attach_context(f.read())
                except OSError as e:
                    print(f"  [error] {e}")
                    continue
                print(f"  context attached: {path}")
                continue
            if line.startswith("/raw "):
                line = line[len("/raw "):]
                continuation = True

            previous = signal.signal(signal.SIGINT, _on_sigint)
            try:
                reply = session.query(line, continuation=continuation)
            except KVChatError as e:
                print(f"  [error] {type(e).__name__}: {e}")
                continue
            finally:
                signal.signal(signal.SIGINT, previous)

            print(reply.text)
            suffix = " (stopped)" if reply.finish_reason == "cancelled" else ""
            print(f"  [{reply.completion_tokens} tokens, {reply.tokens_per_sec:.2f} tok/s]{suffix}")
    finally:
        session.close()


def cmd_serve(args):
    """Start the HTTP server."""
    from kvchat.api.server import ChatServer
    from kvchat.engine.session import ChatSession

    _setup_logging(args)
    session = ChatSession.load(args.model_dir, _session_options(args))
    server = ChatServer(session, host=args.host, port=args.port)
    server.run()


def cmd_check(args):
    """Check model dir: config, derived cache shape, files."""
    import os
    from kvchat.core.config import ModelConfig
    from kvchat.core.errors import ConfigurationError

    config_path = os.path.join(args.model_dir, "config.json")
    try:
        config = ModelConfig.from_json(config_path)
    except ConfigurationError as e:
        print(f"  config.json  INVALID ({e})")
        sys.exit(1)

    print(f"Model dir:   {args.model_dir}")
    print(f"Layers:      {config.num_hidden_layers}")
    print(f"Heads:       {config.num_attention_heads} (kv {config.num_key_value_heads})")
    print(f"Hidden:      {config.hidden_size}")
    print(f"Vocab:       {config.vocab_size}")
    print(f"EOS:         {config.eos_token_id}")
    print(f"Cache shape: {list(config.kv_dims)} x {2 * config.num_hidden_layers} tensors")

    for name in (args.model_file, f"{args.model_file}_data", "tokenizer.json"):
        path = os.path.join(args.model_dir, name)
        if os.path.exists(path):
            print(f"  {name:<24} OK ({os.path.getsize(path) / 1e6:.0f} MB)")
        else:
            print(f"  {name:<24} MISSING")


def cmd_bench(args):
    """Decode-loop throughput with a scripted executor."""
    import os
    # benchmarks/ lives at project root, not inside the kvchat package
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)

    from benchmarks.bench_decode import bench_decode

    print("=" * 60)
    print("kvchat :: Decode loop benchmark")
    print("=" * 60)
    print(f"{'Placement':<14} {'Layers':>7} {'Tokens':>7} {'ms/step':>9} {'tok/s':>9}")
    print("-" * 50)
    for placement in ("host", "accelerator"):
        r = bench_decode(num_layers=args.num_layers, new_tokens=args.tokens, placement=placement)
        print(f"{placement:<14} {args.num_layers:>7} {r['tokens']:>7} {r['ms_per_step']:>9} {r['tokens_per_sec']:>9}")
    print("\nDone.")


def _add_session_args(p):
    p.add_argument("model_dir", help="Directory with config.json, tokenizer.json and the ONNX model")
    p.add_argument("--provider", default="cuda", choices=["cuda", "dml", "cpu"])
    p.add_argument("--max-tokens", type=int, default=9999, help="Budget for prompt + reply")
    p.add_argument("--profiler", action="store_true", help="Write an ONNX Runtime profile per reply")
    p.add_argument("--verbose", action="store_true", help="Verbose ONNX Runtime logging")
    p.add_argument("--threads", type=int, default=1, help="Intra-op threads")
    p.add_argument("--no-fp16", action="store_true", help="Use a float32 cache")
    p.add_argument("--show-special", action="store_true", help="Keep special tokens in replies")
    p.add_argument("--model-file", default="model_q4f16.onnx")
    p.add_argument("--cache-placement", default="host", choices=["host", "accelerator"])
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--json-logs", action="store_true")
    p.add_argument("--log-file", default=None, help="Also write JSON logs to this file")


def main():
    parser = argparse.ArgumentParser(
        prog="kvchat",
        description="Chat with a KV-cached ONNX decoder",
    )
    sub = parser.add_subparsers(dest="command")

    # chat
    p_chat = sub.add_parser("chat", help="Interactive chat")
    _add_session_args(p_chat)
    p_chat.set_defaults(func=cmd_chat)

    # serve
    p_serve = sub.add_parser("serve", help="Start HTTP server")
    _add_session_args(p_serve)
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    # check
    p_check = sub.add_parser("check", help="Check a model directory")
    p_check.add_argument("model_dir")
    p_check.add_argument("--model-file", default="model_q4f16.onnx")
    p_check.set_defaults(func=cmd_check)

    # bench
    p_bench = sub.add_parser("bench", help="Benchmark the decode loop")
    p_bench.add_argument("--num-layers", type=int, default=4)
    p_bench.add_argument("--tokens", type=int, default=128)
    p_bench.set_defaults(func=cmd_bench)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
