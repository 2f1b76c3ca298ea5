#!/usr/bin/env python3
# Dependencies: pyyaml, tree-sitter, tree-sitter-bash
# Install with: pip install pyyaml tree-sitter tree-sitter-bash

"""
Claude Code Permissions Hook - Rule-based permission decisions for Claude Code
Extracts every program a bash command would run and resolves it against allow/deny/ask lists
"""

import argparse
import fnmatch
import json
import re
import shlex
import sys
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import tree_sitter_bash
import yaml
from tree_sitter import Language, Node, Parser


APP_NAME = 'claude-code-permissions-hook'
BASH_TOOL = 'Bash'


# ============================================================================
# Data Models
# ============================================================================

def normalize_program_name(raw: str) -> str:
    """Keep only the final segment of a path-like program token"""
    if '/' not in raw:
        return raw
    return raw.rsplit('/', 1)[-1]


@dataclass(frozen=True)
class ProgramName:
    """Normalized executable identifier: /bin/rm, ./rm and rm are all 'rm'"""
    value: str

    def __post_init__(self):
        object.__setattr__(self, 'value', normalize_program_name(self.value))

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Word:
    """One shell word: unquoted value, source text, and whether it expands at run time"""
    value: str
    raw: str
    dynamic: bool = False


@dataclass
class CommandSegment:
    """A single invocation found in the command tree"""
    program: Word
    args: List[Word]


@dataclass(frozen=True)
class Invocation:
    """A resolved program and the argument values it receives"""
    program: ProgramName
    args: Tuple[str, ...] = ()
    dynamic: bool = False  # some argument expands at run time


@dataclass(frozen=True)
class Extracted:
    """Invocations a command line would run, in discovery order"""
    invocations: Tuple[Invocation, ...]

    @property
    def programs(self) -> Tuple[ProgramName, ...]:
        return tuple(invocation.program for invocation in self.invocations)


@dataclass(frozen=True)
class ParseFailure:
    """The command could not be analyzed; always resolves to a prompt"""
    reason: str


ExtractionResult = Union[Extracted, ParseFailure]


class PermissionMode(Enum):
    DEFAULT = 'default'
    PLAN = 'plan'
    ACCEPT_EDITS = 'acceptEdits'
    BYPASS_PERMISSIONS = 'bypassPermissions'
    DONT_ASK = 'dontAsk'


class Verdict(Enum):
    """Rule table answer for a single program"""
    ALLOW = 'allow'
    DENY = 'deny'
    ASK = 'ask'
    UNLISTED = 'unlisted'


class DecisionKind(Enum):
    NO_OPINION = 'none'
    ALLOW = 'allow'
    ASK = 'ask'
    DENY = 'deny'

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    DecisionKind.NO_OPINION: 0,
    DecisionKind.ALLOW: 1,
    DecisionKind.ASK: 2,
    DecisionKind.DENY: 3,
}


@dataclass(frozen=True)
class Decision:
    """Final permission decision for one request"""
    kind: DecisionKind
    reason: Optional[str] = None

    @classmethod
    def allow(cls, reason: str):
        return cls(DecisionKind.ALLOW, reason)

    @classmethod
    def deny(cls, reason: str):
        return cls(DecisionKind.DENY, reason)

    @classmethod
    def ask(cls, reason: str):
        return cls(DecisionKind.ASK, reason)

    @classmethod
    def no_opinion(cls):
        return cls(DecisionKind.NO_OPINION)


class ConfigError(ValueError):
    """Configuration file is missing, unreadable or malformed"""


class ProtocolError(ValueError):
    """Hook input does not follow the PreToolUse wire format"""


class ExtractionError(Exception):
    """Raised inside the extractor; surfaces as a ParseFailure"""


# ============================================================================
# Rule Table
# ============================================================================

# Tokens that would make a rule string more than one command
SHELL_OPERATORS = {'&&', '||', ';', ';;', '|', '|&', '&'}


def normalize_flag(raw: str) -> str:
    """'r' -> '-r', 'force' -> '--force'; dashed flags are kept as written"""
    if raw.startswith('-'):
        return raw
    if len(raw) == 1:
        return f"-{raw}"
    return f"--{raw}"


def glob_match(pattern: str, value: str) -> bool:
    """Shell-style match where wildcards do not cross '/' (so '/*' matches /tmp, not /home/user)"""
    if '**' in pattern:
        return fnmatch.fnmatchcase(value, pattern)
    pattern_parts = pattern.split('/')
    value_parts = value.split('/')
    if len(pattern_parts) != len(value_parts):
        return False
    return all(fnmatch.fnmatchcase(part, glob) for glob, part in zip(pattern_parts, value_parts))


def classify_args(args: Sequence[str]) -> Tuple[FrozenSet[str], List[str]]:
    """Split arguments into flags and positionals.

    ``--`` ends options and is in neither set; ``-`` alone is positional. A short
    cluster like ``-rf`` is recorded as written and as ``-r`` and ``-f``; a long
    ``--opt=value`` is recorded as written and as ``--opt``.
    """
    flags = set()
    positionals = []
    end_of_options = False
    for arg in args:
        if end_of_options:
            positionals.append(arg)
        elif arg == '--':
            end_of_options = True
        elif arg.startswith('-') and arg != '-':
            flags.add(arg)
            if arg.startswith('--'):
                flags.add(arg.split('=', 1)[0])
            else:
                flags.update('-' + letter for letter in arg[1:])
        else:
            positionals.append(arg)
    return frozenset(flags), positionals


def flag_present(flag: str, flags: FrozenSet[str]) -> bool:
    if flag in flags:
        return True
    # A short cluster in a rule is satisfied by its letters in any grouping
    if not flag.startswith('--') and len(flag) > 2:
        return all('-' + letter in flags for letter in flag[1:])
    return False


def has_prefix(positionals: Sequence[str], chain: Sequence[str]) -> bool:
    return len(positionals) >= len(chain) and all(a == b for a, b in zip(chain, positionals))


@dataclass(frozen=True)
class ArgumentPattern:
    """A flag whose value must match a glob, as '--flag value' or '--flag=value'"""
    flag: str
    value: str

    def found_in(self, args: Sequence[str]) -> bool:
        for index, arg in enumerate(args):
            if arg == '--':
                return False
            if arg == self.flag:
                if index + 1 < len(args):
                    following = args[index + 1]
                    if (not following.startswith('-') or following == '-') and glob_match(self.value, following):
                        return True
                continue
            flag, separator, value = arg.partition('=')
            if separator and flag == self.flag and glob_match(self.value, value):
                return True
        return False


@dataclass(frozen=True)
class BashRule:
    """A program rule, optionally narrowed by argument conditions.

    Every non-empty condition must hold. ``subcommand`` is an ordered prefix of
    the positionals, ``subcommands`` is a list of such prefixes of which any one
    suffices, ``positionals`` are globs that must each match some positional, and
    ``optional_flags`` need at least one member present.
    """
    program: str
    required_flags: FrozenSet[str] = frozenset()
    optional_flags: FrozenSet[str] = frozenset()
    subcommand: Tuple[str, ...] = ()
    positionals: Tuple[str, ...] = ()
    required_arguments: Tuple[ArgumentPattern, ...] = ()
    subcommands: Tuple[Tuple[str, ...], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'program', normalize_program_name(self.program))

    @classmethod
    def parse(cls, text: str) -> 'BashRule':
        """Parse 'program [subcommand ...] [-flags ...] [--flag=glob ...]'"""
        try:
            tokens = shlex.split(text)
        except ValueError as e:
            raise ValueError(f"invalid rule '{text}': {e}") from e
        if not tokens:
            raise ValueError('empty rule string')
        if any(token in SHELL_OPERATORS or ';' in token for token in tokens):
            raise ValueError(f"rule '{text}' contains multiple commands; use separate rules instead")

        program, args = tokens[0], tokens[1:]
        if program.startswith('-') or not normalize_program_name(program):
            raise ValueError(f"rule '{text}' does not start with a program name")

        required_flags = set()
        subcommand = []
        arguments = []
        for arg in args:
            if arg == '--':
                raise ValueError(f"rule '{text}': '--' cannot be required as a flag")
            if arg.startswith('-') and arg != '-':
                flag, separator, value = arg.partition('=')
                if separator:
                    arguments.append(ArgumentPattern(flag, value))
                else:
                    required_flags.add(arg)
            else:
                subcommand.append(arg)

        return cls(
            program,
            required_flags=frozenset(required_flags),
            subcommand=tuple(subcommand),
            required_arguments=tuple(arguments),
        )

    @property
    def unconditional(self) -> bool:
        return not (self.required_flags or self.optional_flags or self.subcommand
                    or self.positionals or self.required_arguments or self.subcommands)

    def matches(self, invocation: Invocation) -> bool:
        if invocation.program.value != self.program:
            return False
        if self.unconditional:
            return True

        flags, positionals = classify_args(invocation.args)
        if not all(flag_present(flag, flags) for flag in self.required_flags):
            return False
        if self.optional_flags and not any(flag_present(flag, flags) for flag in self.optional_flags):
            return False
        if not has_prefix(positionals, self.subcommand):
            return False
        if not all(any(glob_match(pattern, arg) for arg in positionals) for pattern in self.positionals):
            return False
        if not all(argument.found_in(invocation.args) for argument in self.required_arguments):
            return False
        if self.subcommands and not any(has_prefix(positionals, chain) for chain in self.subcommands):
            return False
        return True


RuleEntry = Union[str, BashRule]


class RuleTable:
    """Resolved allow/deny/ask rules with normalized lookup"""

    TIERS = (Verdict.DENY, Verdict.ASK, Verdict.ALLOW)

    def __init__(self, allow: Iterable[RuleEntry] = (), deny: Iterable[RuleEntry] = (),
                 ask: Iterable[RuleEntry] = ()):
        self._rules = {
            Verdict.ALLOW: self._compile(allow),
            Verdict.DENY: self._compile(deny),
            Verdict.ASK: self._compile(ask),
        }
        self._names = {
            verdict: frozenset(rule.program for rule in rules if rule.unconditional)
            for verdict, rules in self._rules.items()
        }

    @staticmethod
    def _compile(entries: Iterable[RuleEntry]) -> Tuple[BashRule, ...]:
        return tuple(entry if isinstance(entry, BashRule) else BashRule.parse(entry) for entry in entries)

    @property
    def allow(self) -> Tuple[BashRule, ...]:
        return self._rules[Verdict.ALLOW]

    @property
    def deny(self) -> Tuple[BashRule, ...]:
        return self._rules[Verdict.DENY]

    @property
    def ask(self) -> Tuple[BashRule, ...]:
        return self._rules[Verdict.ASK]

    def names(self, verdict: Verdict) -> FrozenSet[str]:
        """Programs listed without argument conditions"""
        return self._names[verdict]

    def lookup(self, target: Union[Invocation, ProgramName, str]) -> Verdict:
        """Precedence: deny > ask > allow > unlisted"""
        invocation = target if isinstance(target, Invocation) else Invocation(ProgramName(str(target)))
        if self._tier_matches(Verdict.DENY, invocation):
            return Verdict.DENY
        # Arguments that expand at run time might still satisfy a conditional deny or ask rule
        if invocation.dynamic and (self._has_conditional(Verdict.DENY, invocation)
                                   or self._has_conditional(Verdict.ASK, invocation)):
            return Verdict.ASK
        if self._tier_matches(Verdict.ASK, invocation):
            return Verdict.ASK
        if self._tier_matches(Verdict.ALLOW, invocation):
            return Verdict.ALLOW
        return Verdict.UNLISTED

    def _tier_matches(self, verdict: Verdict, invocation: Invocation) -> bool:
        if invocation.program.value in self._names[verdict]:
            return True
        return any(rule.matches(invocation) for rule in self._rules[verdict] if not rule.unconditional)

    def _has_conditional(self, verdict: Verdict, invocation: Invocation) -> bool:
        return any(not rule.unconditional and rule.program == invocation.program.value
                   for rule in self._rules[verdict])

    def __repr__(self) -> str:
        counts = ', '.join(f"{verdict.value}={len(self._rules[verdict])}" for verdict in self.TIERS)
        return f"RuleTable({counts})"


# ============================================================================
# Launcher Grammars
# ============================================================================

@dataclass(frozen=True)
class LauncherGrammar:
    """Option grammar of a launcher that runs another program by name.

    ``flags`` take no argument, ``options_with_argument`` consume the rest of a
    short-option cluster or the next word, ``command_string_options`` consume a
    string that is itself a command line, and ``optional_argument_options`` only
    accept an attached ``=value``.
    """
    name: str
    flags: FrozenSet[str] = frozenset()
    options_with_argument: FrozenSet[str] = frozenset()
    command_string_options: FrozenSet[str] = frozenset()
    optional_argument_options: FrozenSet[str] = frozenset()
    skips_assignments: bool = False
    dash_is_flag: bool = False

    def takes_argument(self, option: str) -> bool:
        return option in self.options_with_argument or option in self.command_string_options


LAUNCHERS: Dict[str, LauncherGrammar] = {grammar.name: grammar for grammar in (
    LauncherGrammar('command', flags=frozenset({'-p', '-v', '-V'})),
    LauncherGrammar('builtin'),
    LauncherGrammar(
        'exec',
        flags=frozenset({'-c', '-l'}),
        options_with_argument=frozenset({'-a'}),
    ),
    LauncherGrammar('nohup', flags=frozenset({'--help', '--version'})),
    LauncherGrammar(
        'env',
        flags=frozenset({
            '-i', '-0', '-v', '--ignore-environment', '--null', '--debug',
            '--list-signal-handling', '--help', '--version',
        }),
        options_with_argument=frozenset({'-u', '-C', '-P', '-a', '--unset', '--chdir', '--argv0'}),
        command_string_options=frozenset({'-S', '--split-string'}),
        optional_argument_options=frozenset({'--block-signal', '--default-signal', '--ignore-signal'}),
        skips_assignments=True,
        dash_is_flag=True,
    ),
)}


# ============================================================================
# Command Extractor
# ============================================================================

BASH_LANGUAGE = Language(tree_sitter_bash.language())

# Statements that run a builtin named by their leading keyword
KEYWORD_COMMANDS = {'declaration_command', 'unset_command'}

# Word parts whose value is only known at run time
EXPANSION_NODES = {
    'simple_expansion', 'expansion', 'command_substitution', 'process_substitution',
    'arithmetic_expansion', 'ansi_c_string', 'translated_string', 'brace_expression',
}

QUOTED_NODES = {'string', 'raw_string', 'ansi_c_string', 'translated_string'}

# Text bash reads literally, where a trailing backslash does not join lines
LITERAL_NODES = {'raw_string', 'ansi_c_string', 'comment', 'heredoc_body'}

GLOB_CHARACTERS = ('*', '?', '[')

# Backslash-newline whose backslash is not itself escaped
LINE_CONTINUATION = re.compile(rb'(?<!\\)(?:\\\\)*\\\n')

# {name} directly before a redirection allocates a file descriptor
REDIRECT_VARIABLE = re.compile(r'^\{[A-Za-z_][A-Za-z0-9_]*\}$')

# Words that start the compound-command form of coproc
COMPOUND_OPENERS = {'{', '(', '((', '[[', 'if', 'for', 'while', 'until', 'case', 'select'}

MAX_INLINE_DEPTH = 8


class CommandExtractor:
    """Parses a bash command line into the programs it would execute"""

    def extract(self, command: str) -> ExtractionResult:
        """Extract invocations from command text; never raises for bad input"""
        if not command.strip():
            return Extracted(())
        try:
            invocations = self._extract_source(command, 0)
        except ExtractionError as e:
            return ParseFailure(str(e))
        except RecursionError:
            return ParseFailure('command is nested too deeply to analyze')
        return Extracted(tuple(invocations))

    def _extract_source(self, source: str, depth: int) -> List[Invocation]:
        data = source.encode('utf-8')
        root = self._parse(data)
        joined = self._join_continuations(data, root)
        if joined is not None:
            root = self._parse(joined)
        if root.has_error:
            raise ExtractionError(self._describe_error(root))

        invocations: List[Invocation] = []
        self._visit(root, invocations, depth)
        return invocations

    def _parse(self, data: bytes) -> Node:
        return Parser(BASH_LANGUAGE).parse(data).root_node

    def _join_continuations(self, data: bytes, root: Node) -> Optional[bytes]:
        """Drop backslash-newline pairs outside literal text, as bash does before splitting words"""
        if b'\\\n' not in data:
            return None

        literal = self._literal_ranges(root)
        cuts = [match.end() - 2 for match in LINE_CONTINUATION.finditer(data)]
        cuts = [cut for cut in cuts if not any(start <= cut < end for start, end in literal)]
        if not cuts:
            return None

        pieces = []
        previous = 0
        for cut in cuts:
            pieces.append(data[previous:cut])
            previous = cut + 2
        pieces.append(data[previous:])
        return b''.join(pieces)

    def _literal_ranges(self, node: Node) -> List[Tuple[int, int]]:
        # An unquoted heredoc with expansions still runs its substitutions
        if node.type in LITERAL_NODES and not (node.type == 'heredoc_body' and node.named_child_count):
            return [(node.start_byte, node.end_byte)]
        ranges = []
        for child in node.children:
            ranges.extend(self._literal_ranges(child))
        return ranges

    def _describe_error(self, node: Node) -> str:
        """Locate the first ERROR or MISSING node for the failure reason"""
        if node.is_missing:
            row, column = node.start_point
            return f"syntax error: missing '{node.type}' at line {row + 1}, column {column + 1}"
        if node.type == 'ERROR':
            row, column = node.start_point
            return f"syntax error at line {row + 1}, column {column + 1}"
        for child in node.children:
            if child.has_error or child.is_missing:
                return self._describe_error(child)
        return 'syntax error'

    def _visit(self, node: Node, invocations: List[Invocation], depth: int):
        """Walk the tree, collecting every simple command in source order"""
        if node.type == 'command':
            self._visit_command(node, invocations, depth)
            return

        if node.type in KEYWORD_COMMANDS:
            invocations.append(self._keyword_invocation(node))

        for child in node.named_children:
            self._visit(child, invocations, depth)

    def _visit_command(self, node: Node, invocations: List[Invocation], depth: int):
        name_node = node.child_by_field_name('name')
        if name_node is not None:
            program = self._word(name_node)
            if (program.value or program.dynamic) and not REDIRECT_VARIABLE.match(program.raw):
                args = [self._word(arg) for arg in node.children_by_field_name('argument')]
                invocations.extend(self._resolve(CommandSegment(program, args), depth))

        # Substitutions in the name, arguments and assignments run too
        for child in node.named_children:
            self._visit(child, invocations, depth)

    def _keyword_invocation(self, node: Node) -> Invocation:
        words = []
        for child in node.named_children:
            try:
                words.append(self._word(child))
            except ExtractionError:
                raw = child.text.decode('utf-8')
                words.append(Word(raw, raw, dynamic=True))
        return self._invocation(ProgramName(node.children[0].type), words)

    @staticmethod
    def _invocation(name: ProgramName, args: Sequence[Word]) -> Invocation:
        return Invocation(name, tuple(word.value for word in args), any(word.dynamic for word in args))

    def _word(self, node: Node) -> Word:
        raw = node.text.decode('utf-8')
        dynamic = self._is_dynamic(node)
        try:
            parts = shlex.split(raw)
        except ValueError as e:
            if not dynamic:
                raise ExtractionError(f"cannot unquote word {raw!r}: {e}") from e
            parts = []

        if len(parts) == 1:
            return Word(parts[0], raw, dynamic)
        if dynamic:
            return Word(raw, raw, dynamic)
        raise ExtractionError(f"cannot unquote word {raw!r}")

    def _is_dynamic(self, node: Node) -> bool:
        if self._has_expansion(node):
            return True
        unquoted = ''.join(self._unquoted_text(node))
        return any(c in unquoted for c in GLOB_CHARACTERS) or ('{' in unquoted and '}' in unquoted)

    def _has_expansion(self, node: Node) -> bool:
        return node.type in EXPANSION_NODES or any(self._has_expansion(child) for child in node.children)

    def _unquoted_text(self, node: Node) -> Iterator[str]:
        if node.type in QUOTED_NODES:
            return
        if node.child_count == 0:
            yield node.text.decode('utf-8')
            return
        for child in node.children:
            yield from self._unquoted_text(child)

    # ------------------------------------------------------------------
    # Launcher unwrapping
    # ------------------------------------------------------------------

    def _resolve(self, segment: CommandSegment, depth: int) -> List[Invocation]:
        """Unwrap transparent launchers until the real program is reached"""
        program, args = segment.program, segment.args
        while True:
            if program.dynamic:
                raise ExtractionError(f"cannot resolve dynamic program name '{program.raw}'")

            if program.raw == 'coproc':
                program, args = self._coproc_command(args)
                continue

            name = ProgramName(program.value)
            grammar = LAUNCHERS.get(name.value)
            if grammar is None:
                return [self._invocation(name, args)]

            target, rest, command_string = self._consume_options(grammar, args)
            if command_string is not None:
                return self._extract_command_string(grammar, command_string, rest, depth)
            if target is None:
                return [self._invocation(name, rest)]
            program, args = target, rest

    def _coproc_command(self, args: List[Word]) -> Tuple[Word, List[Word]]:
        """coproc is a reserved word; only its simple-command form is analyzed"""
        if not args:
            raise ExtractionError('coproc without a command')
        if any(word.raw in COMPOUND_OPENERS for word in args[:2]):
            raise ExtractionError('coproc with a compound command cannot be analyzed')
        return args[0], args[1:]

    def _consume_options(self, grammar: LauncherGrammar,
                         args: List[Word]) -> Tuple[Optional[Word], List[Word], Optional[str]]:
        """Skip the launcher's options; return (target, target args, inline command string)"""
        index = 0
        while index < len(args):
            word = args[index]
            if REDIRECT_VARIABLE.match(word.raw):
                index += 1
                continue
            self._require_static(word, grammar)
            token = word.value

            if token == '--':
                index += 1
                break
            if token == '-' and grammar.dash_is_flag:
                index += 1
                continue
            if not token.startswith('-') or token == '-':
                break

            index += 1
            if token.startswith('--'):
                command_string, index = self._consume_long_option(grammar, token, args, index)
            else:
                command_string, index = self._consume_short_options(grammar, token, args, index)
            if command_string is not None:
                return None, args[index:], command_string

        if grammar.skips_assignments:
            while index < len(args) and '=' in args[index].value:
                self._require_static(args[index], grammar)
                index += 1

        if index >= len(args):
            return None, [], None
        return args[index], args[index + 1:], None

    def _consume_long_option(self, grammar: LauncherGrammar, token: str,
                             args: List[Word], index: int) -> Tuple[Optional[str], int]:
        option, separator, value = token.partition('=')
        if option in grammar.flags and not separator:
            return None, index
        if option in grammar.optional_argument_options:
            return None, index
        if grammar.takes_argument(option):
            if not separator:
                value, index = self._option_argument(grammar, option, args, index)
            if option in grammar.command_string_options:
                return value, index
            return None, index
        raise ExtractionError(f"unrecognized option '{token}' for {grammar.name}")

    def _consume_short_options(self, grammar: LauncherGrammar, token: str,
                               args: List[Word], index: int) -> Tuple[Optional[str], int]:
        for position in range(1, len(token)):
            option = '-' + token[position]
            if option in grammar.flags:
                continue
            if grammar.takes_argument(option):
                value = token[position + 1:]
                if not value:
                    value, index = self._option_argument(grammar, option, args, index)
                if option in grammar.command_string_options:
                    return value, index
                return None, index
            raise ExtractionError(f"unrecognized option '{option}' for {grammar.name}")
        return None, index

    def _option_argument(self, grammar: LauncherGrammar, option: str,
                         args: List[Word], index: int) -> Tuple[str, int]:
        if index >= len(args):
            raise ExtractionError(f"option '{option}' of {grammar.name} is missing its argument")
        word = args[index]
        self._require_static(word, grammar)
        return word.value, index + 1

    def _require_static(self, word: Word, grammar: LauncherGrammar):
        if word.dynamic:
            raise ExtractionError(
                f"cannot resolve the program run by {grammar.name}: '{word.raw}' expands at run time")

    def _extract_command_string(self, grammar: LauncherGrammar, command_string: str,
                                rest: List[Word], depth: int) -> List[Invocation]:
        """Splice an inline command string back into the launcher and parse it again"""
        if depth >= MAX_INLINE_DEPTH:
            raise ExtractionError(f"inline command strings of {grammar.name} are nested too deeply")
        source = ' '.join([grammar.name, command_string] + [word.raw for word in rest])
        return self._extract_source(source, depth + 1)


# ============================================================================
# Decision Engine
# ============================================================================

NO_CONFIG_REASON = f"{APP_NAME}: no configuration loaded; run with --config to enable rule-based decisions"


def apply_mode(verdict: Verdict, mode: PermissionMode) -> DecisionKind:
    """Allow and Deny are absolute; only Ask is shifted by the permission mode"""
    if verdict is Verdict.ALLOW:
        return DecisionKind.ALLOW
    if verdict is Verdict.DENY:
        return DecisionKind.DENY
    if verdict is Verdict.UNLISTED:
        return DecisionKind.NO_OPINION
    if mode is PermissionMode.BYPASS_PERMISSIONS:
        return DecisionKind.ALLOW
    if mode is PermissionMode.DONT_ASK:
        return DecisionKind.DENY
    return DecisionKind.ASK


def combine(kinds: Iterable[DecisionKind]) -> DecisionKind:
    """Most restrictive wins: Deny > Ask > Allow > NoOpinion"""
    return max(kinds, key=lambda kind: kind.severity, default=DecisionKind.NO_OPINION)


def build_reason(decision: DecisionKind, programs: Sequence[ProgramName],
                 verdicts: Sequence[Verdict], outcomes: Sequence[DecisionKind]) -> str:
    """Name the deciding program and whether a rule or the mode decided it"""
    names = [program.value for program in programs]
    context = f" (in: {', '.join(names)})" if len(names) > 1 else ''

    def first(verdict: Verdict, outcome: DecisionKind) -> Optional[str]:
        for name, v, o in zip(names, verdicts, outcomes):
            if v is verdict and o is outcome:
                return name
        return None

    if decision is DecisionKind.DENY:
        trigger = first(Verdict.DENY, DecisionKind.DENY)
        if trigger is not None:
            return f"{APP_NAME}: '{trigger}' is in your deny list{context}"
        trigger = first(Verdict.ASK, DecisionKind.DENY)
        return f"{APP_NAME}: '{trigger}' denied by dontAsk mode{context}"

    if decision is DecisionKind.ASK:
        trigger = first(Verdict.ASK, DecisionKind.ASK)
        return f"{APP_NAME}: '{trigger}' requires confirmation{context}"

    trigger = first(Verdict.ASK, DecisionKind.ALLOW)
    if trigger is not None:
        return f"{APP_NAME}: '{trigger}' allowed by bypassPermissions mode{context}"
    return f"{APP_NAME}: allowed ({', '.join(names)})"


class DecisionEngine:
    """Resolves extracted programs against the rule table and permission mode"""

    def __init__(self, rules: Optional[RuleTable], extractor: Optional[CommandExtractor] = None):
        self.rules = rules
        self.extractor = extractor or CommandExtractor()

    def evaluate(self, command: str, mode: PermissionMode,
                 extraction: Optional[ExtractionResult] = None) -> Decision:
        """Decide a raw bash command line, reusing an extraction already made for it"""
        if self.rules is None:
            return Decision.ask(NO_CONFIG_REASON)
        if not command.strip():
            return Decision.ask(f"{APP_NAME}: empty bash command")
        if extraction is None:
            extraction = self.extractor.extract(command)
        return self.decide(extraction, mode)

    def decide(self, extraction: ExtractionResult, mode: PermissionMode) -> Decision:
        if self.rules is None:
            return Decision.ask(NO_CONFIG_REASON)

        if isinstance(extraction, ParseFailure):
            return Decision.ask(f"{APP_NAME}: failed to parse command: {extraction.reason}")
        if not isinstance(extraction, Extracted):
            raise TypeError(f"unexpected extraction result: {extraction!r}")
        if not extraction.invocations:
            return Decision.ask(f"{APP_NAME}: no programs extracted from command")

        verdicts = [self.rules.lookup(invocation) for invocation in extraction.invocations]
        outcomes = [apply_mode(verdict, mode) for verdict in verdicts]
        decision = combine(outcomes)
        if decision is DecisionKind.NO_OPINION:
            return Decision.no_opinion()
        return Decision(decision, build_reason(decision, extraction.programs, verdicts, outcomes))


# ============================================================================
# Configuration Management
# ============================================================================

class ConfigManager:
    """Loads the YAML configuration and resolves the bash rule table"""

    TOOL_SECTIONS = ('bash',)
    RULE_DIRECTIVES = ('allow', 'deny', 'ask')
    RULE_KEYS = ('program', 'required_flags', 'optional_flags', 'positionals', 'required_arguments', 'subcommands')

    def __init__(self, config_path: Optional[Path] = None, text: Optional[str] = None):
        self.config_path = Path(config_path) if config_path is not None else None
        if text is None:
            text = self._read_config()
        self.config = self._load_config(text)

    def _read_config(self) -> str:
        if self.config_path is None:
            raise ConfigError('no config file given')
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                return f.read()
        except FileNotFoundError:
            raise ConfigError(f"config file not found: {self.config_path}") from None
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"failed to read config: {e}") from e

    def _load_config(self, text: str) -> Dict[str, Any]:
        """Parse, validate and merge the user document over the defaults"""
        try:
            user_config = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML: {e}") from e

        if user_config is None:
            user_config = {}
        if not isinstance(user_config, dict):
            raise ConfigError('config root must be a mapping')

        known = set(self.TOOL_SECTIONS) | {'system_config'}
        unknown = sorted(str(key) for key in user_config if key not in known)
        if unknown:
            raise ConfigError(f"unknown config section(s): {', '.join(unknown)}")

        defaults = {
            'bash': {directive: [] for directive in self.RULE_DIRECTIVES},
            'system_config': {
                'debug_mode': False,
                'log_approvals': True,
                'log_denials': True,
                'log_prompts': True,
                'log_dir': None,
            },
        }

        sections = {}
        for key, value in user_config.items():
            if value is None:
                value = {}
            if not isinstance(value, dict):
                raise ConfigError(f"section '{key}' must be a mapping")
            sections[key] = value

        for section in self.TOOL_SECTIONS:
            if section in sections:
                sections[section] = self._validate_tool_section(section, sections[section])

        return self._deep_merge(defaults, sections)

    def _validate_tool_section(self, section: str, block: Dict[str, Any]) -> Dict[str, List[BashRule]]:
        unknown = sorted(str(key) for key in block if key not in self.RULE_DIRECTIVES)
        if unknown:
            raise ConfigError(f"unknown directive(s) in '{section}': {', '.join(unknown)}")
        return {directive: self._rule_list(section, directive, block.get(directive))
                for directive in self.RULE_DIRECTIVES}

    def _rule_list(self, section: str, directive: str, value: Any) -> List[BashRule]:
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        if not isinstance(value, list):
            raise ConfigError(f"'{section}.{directive}' must be a list of rules")
        where = f"{section}.{directive}"
        return [self._rule_entry(where, entry) for entry in value]

    def _rule_entry(self, where: str, entry: Any) -> BashRule:
        """A rule is a string like 'git push --force' or a mapping with a 'program' key"""
        if isinstance(entry, dict):
            return self._rule_mapping(where, entry)
        if not isinstance(entry, str):
            raise ConfigError(f"'{where}' entry {entry!r} is not a string or mapping")
        try:
            return BashRule.parse(entry.strip())
        except ValueError as e:
            raise ConfigError(f"'{where}': {e}") from e

    def _rule_mapping(self, where: str, entry: Dict[str, Any]) -> BashRule:
        unknown = sorted(str(key) for key in entry if key not in self.RULE_KEYS)
        if unknown:
            raise ConfigError(f"'{where}' rule has unknown key(s): {', '.join(unknown)}")
        program = entry.get('program')
        if not isinstance(program, str):
            raise ConfigError(f"'{where}' rule needs a 'program' string")
        rule = self._rule_entry(where, program)

        values = {key: self._string_list(where, key, entry.get(key)) for key in self.RULE_KEYS[1:]}

        arguments = []
        for text in values['required_arguments']:
            parts = text.split(None, 1)
            if len(parts) != 2:
                raise ConfigError(
                    f"'{where}' required_arguments entry must have a flag and a value pattern: '{text}'")
            arguments.append(ArgumentPattern(parts[0], parts[1]))

        # Chains continue from the subcommand written in the program string
        subcommand = rule.subcommand
        chains = [tuple(chain.split()) for chain in values['subcommands']]
        if chains and subcommand:
            chains = [subcommand + chain for chain in chains]
            subcommand = ()

        return replace(
            rule,
            required_flags=rule.required_flags | {normalize_flag(f) for f in values['required_flags']},
            optional_flags=frozenset(normalize_flag(f) for f in values['optional_flags']),
            subcommand=subcommand,
            positionals=tuple(values['positionals']),
            required_arguments=rule.required_arguments + tuple(arguments),
            subcommands=tuple(chains),
        )

    def _string_list(self, where: str, key: str, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
            raise ConfigError(f"'{where}' rule key '{key}' must be a list of non-empty strings")
        return [v.strip() for v in value]

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def rule_table(self, section: str = 'bash') -> RuleTable:
        rules = self.config[section]
        return RuleTable(allow=rules['allow'], deny=rules['deny'], ask=rules['ask'])

    def get_system_config(self, option: str, default: Any = None) -> Any:
        """Get system configuration value"""
        return self.config.get('system_config', {}).get(option, default)

    @property
    def log_dir(self) -> Optional[Path]:
        configured = self.get_system_config('log_dir')
        if configured:
            return Path(str(configured)).expanduser()
        if self.config_path is not None:
            return self.config_path.parent / 'logs'
        return None


# ============================================================================
# Protocol Adapter
# ============================================================================

@dataclass
class HookRequest:
    """PreToolUse hook input (snake_case on the wire)"""
    tool_name: str
    tool_input: Dict[str, Any]
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    session_id: Optional[str] = None
    cwd: Optional[str] = None
    hook_event_name: Optional[str] = None
    tool_use_id: Optional[str] = None
    transcript_path: Optional[str] = None

    @classmethod
    def from_json(cls, data: Any) -> 'HookRequest':
        if not isinstance(data, dict):
            raise ProtocolError('hook input must be a JSON object')

        tool_name = data.get('tool_name')
        if not isinstance(tool_name, str):
            raise ProtocolError("hook input has no 'tool_name'")

        tool_input = data.get('tool_input', {})
        if not isinstance(tool_input, dict):
            raise ProtocolError("'tool_input' must be a JSON object")

        mode_value = data.get('permission_mode', PermissionMode.DEFAULT.value)
        try:
            mode = PermissionMode(mode_value)
        except (ValueError, TypeError):
            raise ProtocolError(f"unknown permission_mode {mode_value!r}") from None

        return cls(
            tool_name=tool_name,
            tool_input=tool_input,
            permission_mode=mode,
            session_id=data.get('session_id'),
            cwd=data.get('cwd'),
            hook_event_name=data.get('hook_event_name'),
            tool_use_id=data.get('tool_use_id'),
            transcript_path=data.get('transcript_path'),
        )

    @property
    def command(self) -> Optional[str]:
        value = self.tool_input.get('command')
        return value if isinstance(value, str) else None


def render_decision(decision: Decision) -> Dict[str, Any]:
    """Hook output (camelCase on the wire); no opinion is an empty object"""
    if decision.kind is DecisionKind.NO_OPINION:
        return {}
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": decision.kind.value,
            "permissionDecisionReason": decision.reason or '',
        }
    }


# ============================================================================
# Logging
# ============================================================================

class DecisionLog:
    """Appends permission decisions to JSON audit files"""

    MAX_ENTRIES = 100

    FILENAMES = {
        DecisionKind.ALLOW: 'permission_approvals.json',
        DecisionKind.DENY: 'permission_denials.json',
        DecisionKind.ASK: 'permission_prompts.json',
    }

    OPTIONS = {
        DecisionKind.ALLOW: 'log_approvals',
        DecisionKind.DENY: 'log_denials',
        DecisionKind.ASK: 'log_prompts',
    }

    def __init__(self, config: ConfigManager):
        self.config = config
        self.log_dir = config.log_dir

    def log_decision(self, request: HookRequest, decision: Decision):
        """Log a decision; write failures are reported and otherwise ignored"""
        if decision.kind is DecisionKind.NO_OPINION or self.log_dir is None:
            return
        if not self.config.get_system_config(self.OPTIONS[decision.kind], True):
            return

        entry = {
            'timestamp': datetime.now().isoformat(),
            'tool': request.tool_name,
            'command': request.command,
            'mode': request.permission_mode.value,
            'action': decision.kind.value,
            'reason': decision.reason,
            'cwd': request.cwd,
        }

        log_file = self.log_dir / self.FILENAMES[decision.kind]
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            logs = self._load(log_file)
            logs.append(entry)

            # Keep only the most recent entries
            logs = logs[-self.MAX_ENTRIES:]

            with open(log_file, 'w', encoding='utf-8') as f:
                json.dump(logs, f, indent=2)
        except OSError as e:
            print(f"{APP_NAME}: could not write decision log {log_file}: {e}", file=sys.stderr)

    def _load(self, log_file: Path) -> List[Dict[str, Any]]:
        if not log_file.exists():
            return []
        try:
            with open(log_file, 'r', encoding='utf-8') as f:
                logs = json.load(f)
        except ValueError:
            return []
        return logs if isinstance(logs, list) else []


# ============================================================================
# Main Hook Class
# ============================================================================

class PermissionsHook:
    """Main hook orchestrator"""

    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config
        self.extractor = CommandExtractor()
        self.engine = DecisionEngine(config.rule_table() if config else None, self.extractor)
        self.logger = DecisionLog(config) if config else None

    def check_permission(self, request: HookRequest) -> Decision:
        """Decide a single PreToolUse request"""
        if self.config is None:
            return Decision.ask(NO_CONFIG_REASON)
        if request.tool_name != BASH_TOOL:
            return Decision.no_opinion()

        command = request.command
        if command is None:
            return Decision.ask(f"{APP_NAME}: Bash tool without command field")

        extraction = self.extractor.extract(command)
        if self.config.get_system_config('debug_mode', False):
            self._debug(request, command, extraction)
        return self.engine.evaluate(command, request.permission_mode, extraction)

    def _debug(self, request: HookRequest, command: str, extraction: ExtractionResult):
        print(f"DEBUG: Config: {self.config.config_path}", file=sys.stderr)
        print(f"DEBUG: Permission mode: {request.permission_mode.value}", file=sys.stderr)
        print(f"DEBUG: Command: {command}", file=sys.stderr)
        if isinstance(extraction, ParseFailure):
            print(f"DEBUG: Parse failure: {extraction.reason}", file=sys.stderr)
        else:
            programs = ', '.join(program.value for program in extraction.programs)
            print(f"DEBUG: Programs: {programs}", file=sys.stderr)

    def _log_action(self, request: HookRequest, decision: Decision):
        """Log the permission decision"""
        if self.logger is not None:
            self.logger.log_decision(request, decision)


# ============================================================================
# Entry Point
# ============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry function"""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description='PreToolUse hook: reads a hook request on stdin, writes a permission decision on stdout',
    )
    parser.add_argument('--config', type=Path, help='YAML file with bash allow/deny/ask lists')
    args = parser.parse_args(argv)

    try:
        config = ConfigManager(args.config) if args.config is not None else None
    except ConfigError as e:
        print(json.dumps(render_decision(Decision.ask(f"{APP_NAME}: Config error: {e}"))))
        return 0

    try:
        request = HookRequest.from_json(json.load(sys.stdin))
        hook = PermissionsHook(config)
        decision = hook.check_permission(request)
        hook._log_action(request, decision)
    except ValueError as e:
        decision = Decision.ask(f"{APP_NAME}: Error: {e}")
    except Exception as e:
        # Anything unexpected still ends in a prompt, never a silent allow
        print(f"Hook execution error: {e}", file=sys.stderr)
        decision = Decision.ask(f"{APP_NAME}: Error: {e}")

    print(json.dumps(render_decision(decision)))
    return 0


if __name__ == '__main__':
    sys.exit(main())
