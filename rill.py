import sys
from pathlib import Path

from rill.rill_runtime import ScriptRunner
from rill.rill_printer import Printer


def read_line(prompt: str) -> str:
    """A basic input prompt; raises EOFError at end of input."""
    return input(prompt)


def print_side_effects(result):
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))


def run_script_file(file_path: str):
    """Run a Rill script file non-interactively."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except OSError as e:
        print(f"Error: cannot read {file_path}: {e.strerror or e}", file=sys.stderr)
        raise SystemExit(1)
    runner = ScriptRunner(source_dir=str(p.parent.resolve()))
    printer = Printer()
    result = runner.handle_script(source)
    print_side_effects(result)
    if result.status == 'error':
        # Script errors are reported, not turned into an exit status.
        print(result.format_error(), file=sys.stderr)
        return
    if result.value is not None:
        print(printer.pformat(result.value))


def main(argv=None):
    """Run a script file when provided, otherwise start the interactive REPL."""
    argv = sys.argv[1:] if argv is None else argv
    if argv and not argv[0].startswith("-"):
        run_script_file(argv[0])
        return

    print("Rill REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = ScriptRunner(source_dir=str(Path.cwd()))
    printer = Printer()

    while True:
        try:
            line = read_line(">> ").strip()
        except EOFError:
            print("\nExiting.")
            break
        if not line:
            continue
        if line == "exit":
            break

        result = runner.handle_script(line)
        print_side_effects(result)
        if result.status == 'error':
            print(result.format_error(), file=sys.stderr)
            continue
        if result.value is not None:
            print(printer.pformat(result.value))


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nExiting.")
