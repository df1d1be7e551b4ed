#!/usr/bin/env python3
# https://docs.brew.sh/Manpage#global-command-options
# https://docs.brew.sh/Manpage#install-options-formulacask-
# https://docs.brew.sh/Formula-Cookbook#homebrew-terminology
# https://rubydoc.brew.sh/Homebrew/CLI/Args.html
'''
Argument and option resolution for a lightweight Homebrew replacement
'''
import os
import re  # compile, match, search
import sys  # argv, stdout, stderr, stdout.isatty()
import difflib  # get_close_matches
from configparser import ConfigParser as IniFile
from functools import cached_property
from argparse import (
    ArgumentParser, Action,
    _ActionsContainer as ArgsContainer,
)
from typing import Any, Callable, Iterable, Iterator, NamedTuple, Optional


class Env:
    IS_TTY = sys.stdout.isatty()
    PREFIX = os.environ.get('BREW_PY_PREFIX', '').rstrip('/')


def main(argv: 'list[str]|None' = None) -> None:
    cellar = Cellar.init(Env.PREFIX)
    args = Args(CommandLine.capture(argv), cellar=cellar)
    setLogLevel(args)  # raw scan, parser not configured yet
    func = parseArgs(args)
    setLogLevel(args)
    try:
        func(args)
    except BrewError as e:
        Log.error(e)
        exit(1)


def setLogLevel(args: 'Args') -> None:
    if args.flag(Options.VERBOSE) or args.flag(Options.DEBUG):
        Log.LEVEL = 3
    elif args.flag(Options.QUIET):
        Log.LEVEL = 1
    else:
        Log.LEVEL = 2


# -----------------------------------
#  CLI functions
# -----------------------------------

# https://docs.brew.sh/Manpage#install-options-formulacask-
def cli_install(args: 'Args') -> None:
    ''' Show which formulae would be installed and how (no download). '''
    if args.noNamed:
        raise UsageError('This command requires a formula argument')

    for f in args.formulae:
        Log.main('{} {} ({}){}'.format(
            f.fullName, f.version or '<unknown version>', f.spec,
            ' [build from source]' if args.buildFormulaFromSource(f) else ''))
    for cask in args.casks:
        Log.main(cask, '(cask)')

    if args.buildFlags:
        Log.info('==> Build flags:', ' '.join(args.buildFlags))
    if args.passthrough:
        Log.info('==> Passthrough:', ' '.join(args.passthrough))


# https://docs.brew.sh/Manpage#uninstall-remove-rm-options-installed_formulainstalled_cask-
def cli_uninstall(args: 'Args') -> None:
    ''' Show the installed kegs a name refers to (nothing is removed). '''
    if args.noNamed:
        raise UsageError('This command requires a keg argument')

    for keg in args.kegs:
        Log.main(keg.path)
    if args.options.ignore:
        Log.info('==> Ignoring:', ', '.join(args.options.ignore))


# https://docs.brew.sh/Manpage#info-abv-options-formulacask-
def cli_info(args: 'Args') -> None:
    ''' Show formula file paths and unpinned formula versions. '''
    if args.noNamed:
        raise UsageError('This command requires a formula argument')

    for path in args.formulaePaths:
        Log.main(path)
    for f in args.resolvedFormulae:
        Log.info(' {}: {}'.format(f.fullName, ', '.join(
            f'{spec} {ver}' for spec, ver in sorted(f.versions.items()))
            or '<no version>'))
        if args.options.installed and f.installedPrefix:
            Log.info('  installed:', f.installedPrefix)


def cli_args(args: 'Args') -> None:
    ''' Print the resolved view of the command line. '''
    Log.main('named:', ' '.join(args.named) or '-')
    Log.main('spec:', args.spec())
    Log.main('build flags:', ' '.join(args.buildFlags) or '-')
    Log.main('flags:', ' '.join(args.flagsOnly) or '-')
    Log.main('options:', ' '.join(args.optionsOnly) or '-')
    Log.main('passthrough:', ' '.join(args.passthrough) or '-')


# -----------------------------------
#  CLI
# -----------------------------------

def parseArgs(args: 'Args') -> 'Callable[[Args], None]':
    cli = Cli(description=__doc__)
    cli.arg('--version', action='version', version='%(prog)s 0.9 beta')

    BUILD = [Options.HEAD, Options.DEVEL, Options.UNIVERSAL,
             Options.BUILD_BOTTLE, Options.BUILD_FROM_SOURCE,
             Options.FORCE_BOTTLE, Options.CC, Options.ENV]

    # install
    cmd = cli.subcommand('install', cli_install, aliases=['add'])
    cmd.arg('named', nargs='*', metavar='formula', help='''
        Formula name, tap-qualified name, file path or cask''')
    for opt in BUILD:
        cmd.option(opt)

    # uninstall
    cmd = cli.subcommand('uninstall', cli_uninstall, aliases=['remove', 'rm'])
    cmd.arg('named', nargs='*', metavar='keg', help='Installed formula name')
    cmd.option(Options.FORCE)
    cmd.option(Options.IGNORE_DEPENDENCIES)
    cmd.option(Options.IGNORE)

    # info
    cmd = cli.subcommand('info', cli_info, aliases=['abv'])
    cmd.arg('named', nargs='*', metavar='formula', help='Formula name')
    cmd.option(Options.JSON)
    cmd.option(Options.INSTALLED)

    # args
    cmd = cli.subcommand('args', cli_args)
    cmd.arg('named', nargs='*', help='Any named argument')
    for opt in BUILD:
        cmd.option(opt)

    return cli.parse(args)


# -----------------------------------
#  Cli Helper
# -----------------------------------

class CliQuickArg(ArgsContainer):
    def arg(self, *args: Any, **kwargs: Any) -> Action:
        return self.add_argument(*args, **kwargs)

    def arg_bool(self, *args: Any, **kwargs: Any) -> Action:
        return self.add_argument(*args, **kwargs, action='store_true')


class Cli(ArgumentParser, CliQuickArg):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        # raw-scan fallback only knows full spellings
        kwargs.setdefault('allow_abbrev', False)
        super().__init__(*args, **kwargs)
        self.processed = []  # type: list[Option]
        self.set_defaults(func=lambda _: self.print_help(sys.stdout))

    def option(self, opt: 'Option') -> Action:
        ''' Register one of `Options` and remember it as processed '''
        self.processed.append(opt)
        if opt.kind is bool:
            return self.arg_bool(*opt.spellings, dest=opt.name, help=opt.help)
        if opt.kind is list:
            return self.arg(*opt.spellings, dest=opt.name, help=opt.help,
                            type=Cli.commaList, metavar='A,B')
        return self.arg(*opt.spellings, dest=opt.name, help=opt.help)

    @staticmethod
    def commaList(value: str) -> list[str]:
        return [x for x in value.split(',') if x]

    def subcommand(
        self, name: str, fn: 'Callable[[Args], None]|None',
        *args: Any, meta: str = 'command', **kwargs: Any
    ) -> 'Cli':
        if not hasattr(self, 'sub_parser'):
            self.sub_parser = self.add_subparsers(metavar=meta, dest=meta)

        desc = (fn.__doc__ or '') if fn else ''
        cmd = self.sub_parser.add_parser(
            name, *args, help=desc, description=desc.strip(), **kwargs)
        cmd.set_defaults(cli=cmd)
        if fn:
            cmd.set_defaults(func=fn)
        for opt in Options.GLOBAL:
            cmd.option(opt)
        return cmd

    def parse(self, args: 'Args') -> 'Callable[[Args], None]':
        ''' Parse `args.cmdline` and freeze the option table into `args` '''
        argv = list(args.cmdline.tokens)
        if args.cmdline.command is not None:
            argv.insert(0, args.cmdline.command)
        params, extra = self.parse_known_args(argv)
        rest = []  # type: list[str]
        if '--' in extra:
            i = extra.index('--')
            extra, rest = extra[:i], extra[i + 1:]
        unknown = [x for x in extra if x.startswith('-') and len(x) > 1]
        if unknown:
            self.error('unrecognized arguments: ' + ' '.join(unknown))

        cmd = getattr(params, 'cli', self)  # type: Cli
        builder = OptionTableBuilder()
        for opt in cmd.processed:
            builder.add(opt, getattr(params, opt.name))
        # positionals after a flag end up in `extra`, after `--` in `rest`
        named = getattr(params, 'named', None) or []
        for arg in named + extra + rest:
            builder.addRemaining(arg)
        args.freezeProcessedOptions(builder)
        return params.func


# -----------------------------------
#  Options
# -----------------------------------

class Option(NamedTuple):
    short: Optional[str]
    long: Optional[str]
    kind: type = bool  # bool | str | list
    help: str = ''

    @property
    def name(self) -> str:
        ''' Field in `ParsedOptionTable`, e.g., `build_from_source` '''
        return Options.toName(self.long or self.short or '')

    @property
    def spellings(self) -> list[str]:
        return [x for x in (self.short, self.long) if x]


class Options:
    ''' Every option the command line accepts. Nothing else is parsed. '''
    # global
    VERBOSE = Option('-v', '--verbose', help='Make some output more verbose')
    DEBUG = Option('-d', '--debug', help='Display any debugging information')
    QUIET = Option('-q', '--quiet', help='Make some output more quiet')
    GLOBAL = [VERBOSE, DEBUG, QUIET]

    # install
    HEAD = Option(None, '--HEAD', help='''
        Install the HEAD version (latest source)''')
    DEVEL = Option(None, '--devel', help='''
        Install the development version, if available''')
    UNIVERSAL = Option(None, '--universal', help='''
        Build a universal binary''')
    BUILD_BOTTLE = Option(None, '--build-bottle', help='''
        Prepare the formula for eventual bottling during installation''')
    BUILD_FROM_SOURCE = Option('-s', '--build-from-source', help='''
        Compile from source even if a bottle is provided''')
    FORCE_BOTTLE = Option(None, '--force-bottle', help='''
        Install from a bottle if it exists, even if it would not normally
        be used for installation''')
    CC = Option(None, '--cc', str, help='''
        Attempt to compile using the specified compiler''')
    ENV = Option(None, '--env', str, help='''
        Use the specified build environment (std or super)''')

    # uninstall
    FORCE = Option('-f', '--force', help='''
        Delete all installed versions of formula''')
    IGNORE_DEPENDENCIES = Option(None, '--ignore-dependencies', help='''
        Do not fail uninstall, even if formula is a dependency of another''')
    IGNORE = Option(None, '--ignore', list, help='''
        Treat the comma-separated packages as if they are not installed''')

    # info
    JSON = Option(None, '--json', str, help='''
        Print a JSON representation (currently: v1)''')
    INSTALLED = Option(None, '--installed', help='''
        Print information about installed kegs''')

    ALL = GLOBAL + [
        HEAD, DEVEL, UNIVERSAL, BUILD_BOTTLE, BUILD_FROM_SOURCE, FORCE_BOTTLE,
        CC, ENV, FORCE, IGNORE_DEPENDENCIES, IGNORE, JSON, INSTALLED,
    ]

    @staticmethod
    def toName(option: str) -> str:
        ''' `--build-from-source` -> `build_from_source` '''
        return re.sub(r'^--?', '', option).replace('-', '_')

    @staticmethod
    def globalSpellings() -> set[str]:
        return set(x for opt in Options.GLOBAL for x in opt.spellings)

    @staticmethod
    def valueSpellings() -> set[str]:
        ''' Spellings that consume the next token, e.g., `--cc clang` '''
        return set(x for opt in Options.ALL if opt.kind is not bool
                   for x in opt.spellings)


class ParsedOptionTable(NamedTuple):
    ''' Frozen parse result. One field per `Options.ALL` entry. '''
    verbose: bool = False
    debug: bool = False
    quiet: bool = False
    HEAD: bool = False
    devel: bool = False
    universal: bool = False
    build_bottle: bool = False
    build_from_source: bool = False
    force_bottle: bool = False
    cc: Optional[str] = None
    env: Optional[str] = None
    force: bool = False
    ignore_dependencies: bool = False
    ignore: tuple[str, ...] = ()
    json: Optional[str] = None
    installed: bool = False


class OptionTableBuilder:
    '''
    Mutable side of `ParsedOptionTable`. Filled by the parser, then frozen.
    No changes are allowed after `freeze()`.
    '''

    def __init__(self) -> None:
        self._values = {}  # type: dict[str, Any]
        self.processed = []  # type: list[Option]
        self.remaining = []  # type: list[str]
        self.frozen = None  # type: ParsedOptionTable|None

    def _assertMutable(self) -> None:
        if self.frozen is not None:
            raise RuntimeError('option table is already frozen')

    def add(self, opt: Option, value: Any) -> None:
        self._assertMutable()
        if opt.name not in ParsedOptionTable._fields:
            raise KeyError(f'unknown option "{opt.long or opt.short}"')
        if opt.kind is list:
            value = tuple(value or ())
        elif value is not None and not isinstance(value, opt.kind):
            raise TypeError('option "{}" expects {}, got {!r}'.format(
                opt.long or opt.short, opt.kind.__name__, value))
        if value is not None:
            self._values[opt.name] = value
        self.processed.append(opt)

    def addRemaining(self, arg: str) -> None:
        self._assertMutable()
        self.remaining.append(arg)

    def freeze(self) -> ParsedOptionTable:
        if self.frozen is None:
            self.frozen = ParsedOptionTable(**self._values)
        return self.frozen


# -----------------------------------
#  CommandLine
# -----------------------------------

class CommandLine(NamedTuple):
    command: Optional[str]
    tokens: tuple[str, ...]

    @staticmethod
    def capture(argv: 'Iterable[str]|None' = None) -> 'CommandLine':
        ''' Split off the first non-flag token as command (`brew <cmd>`) '''
        rv = list(sys.argv[1:] if argv is None else argv)
        for i, arg in enumerate(rv):
            if not arg.startswith('-'):
                return CommandLine(rv.pop(i), tuple(rv))
        return CommandLine(None, tuple(rv))


class RawArgumentScanner:
    ''' Answers flag queries from the raw tokens, before parsing is done '''

    def __init__(self, cmdline: CommandLine) -> None:
        self.tokens = cmdline.tokens
        self.flags = []  # type: list[str]
        self.positionals = []  # type: list[str]
        self._scan()

    def _scan(self) -> None:
        ''' Split tokens into flags and positionals, the way argparse does '''
        valued = Options.valueSpellings()
        it = iter(self.tokens)
        for arg in it:
            if arg == '--':
                self.positionals.extend(it)  # end of options
            elif arg.startswith('--'):
                self.flags.append(arg)
                if arg in valued:
                    next(it, None)  # `--cc clang`
            elif arg.startswith('-') and len(arg) > 1:
                # clustered short flags, e.g., `-sv`
                for i, char in enumerate(arg[1:], start=2):
                    self.flags.append('-' + char)
                    if '-' + char in valued:
                        if i == len(arg):
                            next(it, None)
                        break
            else:
                self.positionals.append(arg)

    def includes(self, *spellings: str) -> bool:
        return any(x in self.flags for x in spellings)

    def positional(self) -> list[str]:
        return list(self.positionals)


class NamedArgs:
    # https://github.com/Homebrew/brew/blob/master/Library/Homebrew/tap_constants.rb
    CASK_REGEX = re.compile(
        r'^([Hh]omebrew)/(?:homebrew-)?([Cc]ask[\w-]*)/([\w+.-]+)$')

    @staticmethod
    def keepCase(arg: str) -> bool:
        ''' Paths, URLs and bottle filenames are case sensitive '''
        return '/' in arg \
            or arg.endswith(Config.NAMES.ARCHIVE_SUFFIXES) \
            or os.path.exists(arg)

    @staticmethod
    def normalize(args: Iterable[str]) -> list[str]:
        ''' Lowercase package names and remove duplicates (keep order) '''
        return list(dict.fromkeys(
            x if NamedArgs.keepCase(x) else x.lower() for x in args))

    @staticmethod
    def isCask(name: str) -> bool:
        return bool(NamedArgs.CASK_REGEX.match(name))


# -----------------------------------
#  Args
# -----------------------------------

class Spec:
    STABLE = 'stable'
    HEAD = 'head'
    DEVEL = 'devel'


class Args:
    '''
    Resolution context of a single invocation.
    Starts unparsed; `freezeProcessedOptions()` switches to parsed (once).
    Cached properties are never invalidated. If `spec()`, `buildFlags` or
    `downcasedUniqueNamed` are read before `freezeProcessedOptions()`, the
    raw-scan answer is kept for good.
    '''

    def __init__(
        self, cmdline: CommandLine, *,
        cellar: 'Cellar|None' = None,
        formulary: 'Formulary|None' = None,
        suggestions: 'MissingFormula|None' = None,
    ) -> None:
        self.cmdline = cmdline
        self.scanner = RawArgumentScanner(cmdline)
        self.cellar = cellar or Cellar(Env.PREFIX)
        self.formulary = formulary or Formulary(self.cellar)
        self.suggestions = suggestions or MissingFormula(self.cellar)
        self.processedOptions = ()  # type: tuple[Option, ...]
        self.remaining = ()  # type: tuple[str, ...]
        self._options = None  # type: ParsedOptionTable|None
        self._specs = {}  # type: dict[str|None, str|None]

    def __repr__(self) -> str:
        return '<Args {} ({})>'.format(
            self.cmdline.command, 'parsed' if self.argsParsed else 'unparsed')

    def freezeProcessedOptions(self, builder: OptionTableBuilder) -> None:
        ''' One-way transition to parsed state '''
        if self.argsParsed:
            raise RuntimeError('options have already been parsed')
        table = builder.freeze()
        self.processedOptions = tuple(builder.processed)
        self.remaining = tuple(builder.remaining)
        self._options = table  # last, flips `argsParsed`

    @property
    def argsParsed(self) -> bool:
        return self._options is not None

    @property
    def options(self) -> ParsedOptionTable:
        if self._options is None:
            raise RuntimeError('options have not been parsed yet')
        return self._options

    # Flags (parsed table if available, raw command line otherwise)

    def flag(self, opt: Option) -> bool:
        if self.argsParsed:
            return getattr(self.options, opt.name) is True
        return self.scanner.includes(*opt.spellings)

    @property
    def head(self) -> bool:
        return self.flag(Options.HEAD)

    @property
    def devel(self) -> bool:
        return self.flag(Options.DEVEL)

    @property
    def buildUniversal(self) -> bool:
        return self.flag(Options.UNIVERSAL)

    @property
    def buildBottle(self) -> bool:
        return self.flag(Options.BUILD_BOTTLE)

    @property
    def buildFromSource(self) -> bool:
        return self.flag(Options.BUILD_FROM_SOURCE)

    @property
    def forceBottle(self) -> bool:
        return self.flag(Options.FORCE_BOTTLE)

    @property
    def buildStable(self) -> bool:
        return not (self.head or self.devel)

    def spec(self, default: 'str|None' = Spec.STABLE) -> 'str|None':
        ''' `head` > `devel` > `default` (`None` means unspecified) '''
        if default not in self._specs:
            if self.head:
                self._specs[default] = Spec.HEAD
            elif self.devel:
                self._specs[default] = Spec.DEVEL
            else:
                self._specs[default] = default
        return self._specs[default]

    @cached_property
    def buildFlags(self) -> list[str]:
        '''
        Flags that trigger building over installing from a bottle.
        Order is fixed (for messages), it is not a priority.
        '''
        rv = []
        if self.head:
            rv.append('--HEAD')
        if self.buildUniversal:
            rv.append('--universal')
        if self.buildBottle:
            rv.append('--build-bottle')
        if self.buildFromSource:
            rv.append('--build-from-source')
        return rv

    def buildFormulaFromSource(self, f: 'Formula') -> bool:
        ''' Whether `f` should be built from source during this run '''
        if not self.buildFromSource and not self.buildBottle:
            return False
        return any(x.fullName == f.fullName for x in self.formulae)

    # Effective flags

    @cached_property
    def cliArgs(self) -> list[str]:
        ''' Processed options as given, e.g., `--cc=clang` '''
        table = self.options
        rv = []
        for opt in self.processedOptions:
            option = opt.long or opt.short
            value = getattr(table, opt.name)
            if value is True:
                rv.append(option)
            elif isinstance(value, str):
                rv.append(f'{option}={value}')
            elif isinstance(value, tuple) and value:
                rv.append(option + '=' + ','.join(value))
        return rv

    @cached_property
    def optionsOnly(self) -> list[str]:
        return [x for x in self.cliArgs if x.startswith('-')]

    @cached_property
    def flagsOnly(self) -> list[str]:
        return [x for x in self.cliArgs if x.startswith('--')]

    @property
    def passthrough(self) -> list[str]:
        ''' Options to forward to a sub-invocation (no global options) '''
        ignore = Options.globalSpellings()
        return [x for x in self.optionsOnly if x not in ignore]

    # Named arguments

    @property
    def named(self) -> list[str]:
        return list(self.remaining)

    @property
    def noNamed(self) -> bool:
        return not self.named

    @cached_property
    def downcasedUniqueNamed(self) -> list[str]:
        if self.argsParsed:
            return NamedArgs.normalize(self.remaining)
        return NamedArgs.normalize(self.scanner.positional())

    def _formulaNames(self) -> list[str]:
        casks = self.casks
        rv = [x for x in self.downcasedUniqueNamed if x not in casks]
        if '' in rv:
            raise UsageError('package name may not be empty')
        return rv

    @cached_property
    def casks(self) -> list[str]:
        return [x for x in self.downcasedUniqueNamed if NamedArgs.isCask(x)]

    @cached_property
    def formulae(self) -> 'list[Formula]':
        ''' Formulae pinned to the requested spec (default: stable) '''
        spec = self.spec()
        return Formula.uniq(
            self.formulary.factory(name, spec) if Formulary.isPath(name)
            else self.formulary.findWithPriority(name, spec)
            for name in self._formulaNames())

    @cached_property
    def resolvedFormulae(self) -> 'list[Formula]':
        ''' Formulae without a pinned spec (unless --HEAD or --devel) '''
        spec = self.spec(None)
        return Formula.uniq(
            self.formulary.resolve(name, spec) for name in self._formulaNames())

    @cached_property
    def formulaePaths(self) -> list[str]:
        return list(dict.fromkeys(
            self.formulary.path(name) for name in self._formulaNames()))

    @cached_property
    def kegs(self) -> 'list[Keg]':
        resolver = KegResolver(self.cellar, self.formulary, self.suggestions)
        return [resolver.resolve(name) for name in self._formulaNames()]


# -----------------------------------
#  Keg
# -----------------------------------

class Keg(NamedTuple):
    path: str  # @/Cellar/<pkg>/<version>

    @property
    def name(self) -> str:
        return os.path.basename(os.path.dirname(self.path))

    @property
    def version(self) -> str:
        return os.path.basename(self.path)


class KegResolver:
    '''
    Map a name to exactly one installed keg. Strategies are tried in order,
    the first one returning a path wins. Never guesses.
    '''

    def __init__(
        self, cellar: 'Cellar', formulary: 'Formulary',
        suggestions: 'MissingFormula',
    ) -> None:
        self.cellar = cellar
        self.formulary = formulary
        self.suggestions = suggestions
        self.strategies = [
            self.fromOptLink,
            self.fromLinkedKeg,
            self.fromSingleVersion,
            self.fromInstalledPrefix,
        ]  # type: list[Callable[[str, str, list[str]], str|None]]

    def resolve(self, name: str) -> Keg:
        if not name:
            raise UsageError('package name may not be empty')

        rack = self.formulary.toRack(name)
        dirs = self.cellar.subdirs(rack)
        if not dirs:
            reason = self.suggestions.suggestCommand(name, 'uninstall')
            if reason:
                Log.main(reason, file=sys.stderr)
            raise NoSuchKegError(name, rack, reason)

        for strategy in self.strategies:
            if path := strategy(name, rack, dirs):
                Log.debug(f'[DEBUG] {name} -> {Cellar.shortPath(path)}'
                          f' ({strategy.__name__})')
                return Keg(path)
        raise MultipleVersionsInstalledError(name, rack, dirs)

    @staticmethod
    def _linkedDirectory(path: str) -> 'str|None':
        lnk = LinkTarget.read(path)
        return lnk.target if lnk and os.path.isdir(lnk.target) else None

    def fromOptLink(self, name: str, rack: str, dirs: list[str]) \
            -> 'str|None':
        ''' `@/opt/<pkg>` points to a keg '''
        return self._linkedDirectory(self.cellar.optPrefix(rack))

    def fromLinkedKeg(self, name: str, rack: str, dirs: list[str]) \
            -> 'str|None':
        ''' `@/var/homebrew/linked/<pkg>` points to a keg '''
        return self._linkedDirectory(self.cellar.linkedKegRef(rack))

    def fromSingleVersion(self, name: str, rack: str, dirs: list[str]) \
            -> 'str|None':
        return dirs[0] if len(dirs) == 1 else None

    def fromInstalledPrefix(self, name: str, rack: str, dirs: list[str]) \
            -> str:
        ''' Ask the formula which of the installed versions is current '''
        try:
            if Formulary.isPath(name):
                f = self.formulary.factory(name)
            else:
                f = self.formulary.fromRack(rack)
        except FormulaUnavailableError:
            raise MultipleVersionsInstalledError(name, rack, dirs)

        prefix = f.installedPrefix
        if not prefix or not os.path.isdir(prefix):
            raise MultipleVersionsInstalledError(name, rack, dirs)
        return prefix


# -----------------------------------
#  Formula
# -----------------------------------

class Formula:
    '''
    Descriptor loaded from a `<name>.rb` formula file.
    Most properties are cached.
    '''

    def __init__(
        self, path: str, tap: 'str|None', spec: 'str|None', cellar: 'Cellar'
    ) -> None:
        self.path = path
        self.tap = tap
        self.spec = spec  # None: not pinned
        self.name = os.path.splitext(os.path.basename(path))[0]
        self.rack = cellar.rackPath(self.name)
        self._cellar = cellar

    def __repr__(self) -> str:
        return f'<Formula {self.fullName} ({self.spec})>'

    @staticmethod
    def uniq(formulae: 'Iterable[Formula]') -> 'list[Formula]':
        ''' Remove duplicates by `.name`, first one wins '''
        rv = {}  # type: dict[str, Formula]
        for f in formulae:
            rv.setdefault(f.name, f)
        return list(rv.values())

    @property
    def fullName(self) -> str:
        ''' Tap-qualified name. Core formulae use the plain name. '''
        if self.tap and self.tap != Config.TAPS.CORE:
            return f'{self.tap}/{self.name}'
        return self.name

    @cached_property
    def versions(self) -> 'dict[str, str]':
        ''' Map of spec to version, e.g., `{"stable": "1.2", "head": "HEAD"}` '''
        return RubyParser(self.path).parseVersions()

    @property
    def version(self) -> 'str|None':
        return self.versions.get(self.spec or Spec.STABLE)

    @cached_property
    def installedPrefix(self) -> 'str|None':
        '''
        Newest installed spec (head > devel > stable) or active prefix.
        Of several `HEAD-*` kegs, the most recently modified one wins.
        '''
        if Spec.HEAD in self.versions:
            heads = [x for x in self._cellar.subdirs(self.rack)
                     if os.path.basename(x).startswith('HEAD')]
            if heads:
                return max(heads, key=os.path.getmtime)
        for spec in (Spec.DEVEL, Spec.STABLE):
            ver = self.versions.get(spec)
            if ver and os.path.isdir(os.path.join(self.rack, ver)):
                return os.path.join(self.rack, ver)
        return os.path.join(self.rack, self.version) if self.version else None


class RubyParser:
    def __init__(self, path: str) -> None:
        self.path = path
        if not os.path.isfile(self.path):
            raise FileNotFoundError(path)

    def readlines(self) -> Iterator[str]:
        with open(self.path, 'r') as fp:
            for line in fp.readlines():
                line = line.strip()
                if line and not line.startswith('#'):
                    yield line

    def parseVersions(self) -> 'dict[str, str]':
        ''' Extract stable, devel and head version (stops at first `def`) '''
        rx_blk = re.compile(r'^(\w+)\b.*\sdo(?:\s*\|[^|]*\|)?$')
        rx_ver = re.compile(r'^version\s+"([^"]+)"')
        rx_url = re.compile(r'^url\s+"([^"]+)"')

        rv = {}  # type: dict[str, str]
        urls = {}  # type: dict[str, str]
        block = []  # type: list[str]
        for line in self.readlines():
            if line.startswith('def '):
                break
            if line == 'end' or line.startswith('end '):
                if block:
                    block.pop()
                continue
            if match := rx_blk.match(line):
                block.append(match.group(1))
                if block == ['head']:
                    rv[Spec.HEAD] = 'HEAD'
                continue

            if not block or block == ['stable']:
                spec = Spec.STABLE
            elif block == ['devel']:
                spec = Spec.DEVEL
            else:
                continue  # bottle, resource, patch, ...

            if match := rx_ver.match(line):
                rv[spec] = match.group(1)
            elif match := rx_url.match(line):
                urls.setdefault(spec, match.group(1))
            elif line.startswith('head ') and not block:
                rv[Spec.HEAD] = 'HEAD'

        for spec, url in urls.items():
            if spec not in rv and (ver := RubyParser.versionFromUrl(url)):
                rv[spec] = ver
        return rv

    @staticmethod
    def versionFromUrl(url: str) -> 'str|None':
        ''' `.../wget-1.20.3.tar.gz` -> `1.20.3` '''
        match = re.search(r'v?(\d+(?:\.\d+)+)', os.path.basename(url))
        return match.group(1) if match else None


# -----------------------------------
#  Formulary
# -----------------------------------

class Formulary:
    '''
    Formula lookup by name, tap-qualified name (`user/repo/name`) or path.
    Formula files: `@/Library/Taps/<user>/homebrew-<repo>/Formula/<name>.rb`
    '''

    def __init__(self, cellar: 'Cellar') -> None:
        self.cellar = cellar

    @staticmethod
    def isPath(name: str) -> bool:
        return '/' in name or os.path.exists(name)

    @staticmethod
    def isFormulaFile(ref: str) -> bool:
        return ref.endswith('.rb') or os.path.isfile(ref)

    @staticmethod
    def splitTapName(ref: str) -> 'tuple[str, str]|None':
        ''' `user/homebrew-repo/name` -> (`user/repo`, `name`) '''
        parts = ref.split('/')
        if len(parts) != 3 or not all(parts):
            return None
        user, repo, name = parts
        if repo.startswith('homebrew-'):
            repo = repo[len('homebrew-'):]
        return f'{user}/{repo}'.lower(), name

    def tapFormulaPath(self, tap: str, name: str) -> 'str|None':
        root = self.cellar.tapPath(tap)
        for sub in ('Formula', 'HomebrewFormula', ''):
            path = os.path.join(root, sub, name + '.rb')
            if os.path.isfile(path):
                return path
        return None

    def factory(self, ref: str, spec: 'str|None' = Spec.STABLE) -> 'Formula':
        ''' Load from file path, tap-qualified name or plain name '''
        if Formulary.isFormulaFile(ref):
            if not os.path.isfile(ref):
                raise FormulaUnavailableError(ref)
            path = os.path.abspath(ref)
            return Formula(path, self.cellar.tapForPath(path), spec,
                           self.cellar)

        if '/' not in ref:
            return self.findWithPriority(ref, spec)

        tapName = Formulary.splitTapName(ref)
        if not tapName:
            raise FormulaUnavailableError(ref)
        tap, name = tapName
        path = self.tapFormulaPath(tap, name)
        if not path:
            raise FormulaUnavailableError(ref)
        return Formula(path, tap, spec, self.cellar)

    def findWithPriority(self, name: str, spec: 'str|None' = Spec.STABLE) \
            -> 'Formula':
        ''' Core tap wins. Otherwise exactly one other tap must match. '''
        core = Config.TAPS.CORE
        if path := self.tapFormulaPath(core, name):
            return Formula(path, core, spec, self.cellar)

        matches = []  # type: list[tuple[str, str]]
        for tap in self.cellar.allTaps():
            if tap != core and (path := self.tapFormulaPath(tap, name)):
                matches.append((tap, path))
        if not matches:
            raise FormulaUnavailableError(name)
        if len(matches) > 1:
            raise TapFormulaAmbiguityError(name, [x for x, _ in matches])
        tap, path = matches[0]
        return Formula(path, tap, spec, self.cellar)

    def resolve(self, name: str, spec: 'str|None' = None) -> 'Formula':
        ''' Like `factory` but the spec is not pinned unless requested '''
        return self.factory(name, spec)

    def path(self, ref: str) -> str:
        ''' Formula file path. Falls back to the core tap if not found. '''
        if Formulary.isFormulaFile(ref):
            return os.path.abspath(ref)

        tap, name = Formulary.splitTapName(ref) or (Config.TAPS.CORE, ref)
        if '/' not in ref:
            try:
                return self.findWithPriority(name).path
            except TapFormulaAmbiguityError:
                raise
            except FormulaUnavailableError:
                pass
        return self.tapFormulaPath(tap, name) or os.path.join(
            self.cellar.tapPath(tap), 'Formula', name + '.rb')

    def toRack(self, name: str) -> str:
        ''' `@/Cellar/<name>` for plain, tap-qualified and path names '''
        base = os.path.basename(name)
        if base.endswith('.rb'):
            base = base[:-len('.rb')]
        return self.cellar.rackPath(base.lower())

    def fromRack(self, rack: str) -> 'Formula':
        return self.findWithPriority(os.path.basename(rack), None)


# -----------------------------------
#  MissingFormula
# -----------------------------------

class MissingFormula:
    ''' "Did you mean" hints for unknown package names '''

    def __init__(self, cellar: 'Cellar') -> None:
        self.cellar = cellar

    def suggestCommand(self, name: str, command: str) -> 'str|None':
        if command == 'uninstall' and self.cellar.caskInstalled(name):
            return f'{name} is a cask. Did you mean `brew cask {command} {name}`?'

        similar = difflib.get_close_matches(
            name.lower(), self.cellar.installedRacks(), 3)
        if similar:
            return 'Did you mean {}?'.format(
                ' or '.join(f'"{x}"' for x in similar))
        return None


# -----------------------------------
#  Config
# -----------------------------------

class Config:
    class Names(NamedTuple):
        ARCHIVE_SUFFIXES: tuple[str, ...]

    class Taps(NamedTuple):
        CORE: str

    NAMES = Names(ARCHIVE_SUFFIXES=('.tar.gz',))
    TAPS = Taps(CORE='homebrew/core')

    @staticmethod
    def load(fname: str) -> None:
        if not os.path.exists(fname):
            with open(fname, 'w') as fp:
                fp.write('''
[names]
; names with these endings keep their case (comma separated)
archive_suffixes = .tar.gz  ; default: .tar.gz

[taps]
; preferred tap if a formula name exists in multiple taps
core = homebrew/core  ; default: homebrew/core
''')
        ini = IniFile(inline_comment_prefixes=(';', '#'))
        ini.read(fname)

        suffixes = ini.get('names', 'archive_suffixes', fallback='.tar.gz')
        Config.NAMES = Config.Names(
            ARCHIVE_SUFFIXES=tuple(
                x.strip() for x in suffixes.split(',') if x.strip()),
        )
        core = ini.get('taps', 'core', fallback='homebrew/core')
        if core.count('/') != 1:
            raise AttributeError(f'Invalid core tap "{core}" in config')
        Config.TAPS = Config.Taps(CORE=core.lower())


# -----------------------------------
#  LinkTarget
# -----------------------------------

class LinkTarget(NamedTuple):
    path: str
    target: str  # absolute path
    raw: str = ''  # relative target

    @staticmethod
    def read(filePath: str) -> 'LinkTarget|None':
        ''' Read a single symlink and populate with absolute paths '''
        if not os.path.islink(filePath):
            return None
        raw = os.readlink(filePath)
        real = os.path.realpath(os.path.join(os.path.dirname(filePath), raw))
        return LinkTarget(filePath, real, raw)


# -----------------------------------
#  Local logic
# -----------------------------------

class Cellar:
    ''' Directory layout below a single prefix. '''
    ROOT = Env.PREFIX  # for `shortPath` only

    def __init__(self, root: str) -> None:
        self.root = root
        self.racks = os.path.join(root, 'Cellar')
        self.caskroom = os.path.join(root, 'Caskroom')
        self.opt = os.path.join(root, 'opt')
        self.linked = os.path.join(root, 'var', 'homebrew', 'linked')
        self.taps = os.path.join(root, 'Library', 'Taps')

    def __repr__(self) -> str:
        return f'<Cellar {self.root}>'

    @staticmethod
    def init(root: str) -> 'Cellar':
        ''' Check if ENV variable is set, create directories, load config '''
        if not root:
            Log.error('env BREW_PY_PREFIX not set')
            exit(42)

        cellar = Cellar(root)
        for x in (cellar.racks, cellar.caskroom, cellar.opt, cellar.linked,
                  cellar.taps):
            os.makedirs(x, exist_ok=True)

        Cellar.ROOT = root
        Config.load(os.path.join(root, 'config.ini'))  # after makedirs
        return cellar

    # Paths

    def rackPath(self, name: str) -> str:
        ''' Returns `@/Cellar/<pkg>` '''
        return os.path.join(self.racks, name)

    def optPrefix(self, rack: str) -> str:
        ''' Returns `@/opt/<pkg>` '''
        return os.path.join(self.opt, os.path.basename(rack))

    def linkedKegRef(self, rack: str) -> str:
        ''' Returns `@/var/homebrew/linked/<pkg>` '''
        return os.path.join(self.linked, os.path.basename(rack))

    def tapPath(self, tap: str) -> str:
        ''' `user/repo` -> `@/Library/Taps/user/homebrew-repo` '''
        user, repo = tap.split('/')
        return os.path.join(self.taps, user, 'homebrew-' + repo)

    def tapForPath(self, path: str) -> 'str|None':
        ''' Reverse of `tapPath`. `None` if `path` is not inside a tap. '''
        rel = os.path.relpath(path, self.taps).split(os.sep)
        if len(rel) < 3 or rel[0] == '..' or \
                not rel[1].startswith('homebrew-'):
            return None
        return '{}/{}'.format(rel[0], rel[1][len('homebrew-'):])

    # Listing

    def subdirs(self, rack: str) -> list[str]:
        ''' Installed versions of a rack (empty if not installed) '''
        if not os.path.isdir(rack):
            return []
        return sorted(x.path for x in os.scandir(rack) if x.is_dir())

    def installedRacks(self) -> list[str]:
        if not os.path.isdir(self.racks):
            return []
        return sorted(x.name for x in os.scandir(self.racks)
                      if self.subdirs(x.path))

    def allTaps(self) -> list[str]:
        ''' All `user/repo` taps (sorted) '''
        rv = []
        if os.path.isdir(self.taps):
            for user in sorted(os.scandir(self.taps), key=lambda x: x.name):
                if not user.is_dir():
                    continue
                for repo in sorted(os.scandir(user.path), key=lambda x: x.name):
                    if repo.is_dir() and repo.name.startswith('homebrew-'):
                        rv.append(f'{user.name}/{repo.name[len("homebrew-"):]}')
        return rv

    def caskInstalled(self, token: str) -> bool:
        return bool(self.subdirs(os.path.join(self.caskroom, token)))

    @staticmethod
    def shortPath(path: str) -> str:
        ''' Return truncated path (relative to `Cellar.ROOT`) '''
        if not Cellar.ROOT:
            return path
        return os.path.relpath(path, Cellar.ROOT)


# -----------------------------------
#  Errors
# -----------------------------------

class BrewError(Exception):
    ''' User-facing error. Printed by `main()` without traceback. '''


class UsageError(BrewError):
    def __init__(self, reason: str = 'Invalid usage') -> None:
        super().__init__(reason)


class FormulaUnavailableError(BrewError):
    def __init__(self, name: str, msg: 'str|None' = None) -> None:
        self.name = name
        super().__init__(msg or f'No available formula with the name "{name}"')


class TapFormulaAmbiguityError(FormulaUnavailableError):
    def __init__(self, name: str, taps: list[str]) -> None:
        self.taps = taps
        super().__init__(name, '\n'.join([
            f'Formulae found in multiple taps for "{name}":',
            Txt.prettyList([f'{tap}/{name}' for tap in taps]),
            'Please use the fully-qualified name, e.g., '
            f'{taps[0]}/{name}, to refer to the formula.',
        ]))


class NoSuchKegError(BrewError):
    def __init__(self, name: str, rack: str, suggestion: 'str|None' = None) \
            -> None:
        self.name = name
        self.rack = rack
        self.suggestion = suggestion
        super().__init__(f'No such keg: {rack}')


class MultipleVersionsInstalledError(BrewError):
    def __init__(self, name: str, rack: str, dirs: list[str]) -> None:
        self.name = name
        self.rack = rack
        self.dirs = dirs
        super().__init__('\n'.join([
            f'Multiple kegs installed to {rack}',
            Txt.prettyList(dirs),
            f'However we don\'t know which one "{name}" refers to.',
            'Please delete (with rm -rf!) all but one and then try again.',
        ]))


# -----------------------------------
#  Utils
# -----------------------------------

class Txt:
    @staticmethod
    def prettyList(arr: list[str], prefix: str = '  - ') -> str:
        ''' Join list of items with newline and prepend `prefix` '''
        return '\n'.join(prefix + x for x in arr)


# -----------------------------------
#  Logger
# -----------------------------------

class Log:
    LEVEL = 2  # 0: error, 1: warn, 2: info, 3: debug

    @staticmethod
    def _log(lvl: int, *msg: Any, **kwargs: Any) -> None:
        if Log.LEVEL >= lvl:
            print(*msg, **kwargs)

    @staticmethod
    def error(*msg: Any, **kwargs: Any) -> None:
        start = '\033[31m' if Env.IS_TTY else ''
        end = '\033[0m' if Env.IS_TTY else ''
        kwargs['file'] = sys.stderr
        Log._log(0, f'{start}ERROR:', *msg, end, **kwargs)

    @staticmethod
    def main(*msg: Any, **kwargs: Any) -> None:
        Log._log(0, *msg, **kwargs)

    @staticmethod
    def info(*msg: Any, **kwargs: Any) -> None:
        Log._log(2, *msg, **kwargs)

    @staticmethod
    def debug(*msg: Any, **kwargs: Any) -> None:
        Log._log(3, *msg, **kwargs)


if __name__ == '__main__':
    main()
