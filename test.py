#!/usr/bin/env python3
import os
import tempfile
from typing import Any, Callable

from brewargs import (
    Args, Cellar, CommandLine, Config, Formula, NamedArgs, Options,
    OptionTableBuilder, ParsedOptionTable, RawArgumentScanner, RubyParser, Spec,
    parseArgs,
    FormulaUnavailableError, MultipleVersionsInstalledError, NoSuchKegError,
    TapFormulaAmbiguityError, UsageError,
)


def main() -> None:
    testOptionTableIsClosed()
    testOptionTableFreeze()
    testNormalizedNames()
    testNormalizedNamesKeepExistingFile()
    testCasks()
    testRawScanner()
    testPrePostParseAgreement()
    testSpecPrecedence()
    testBuildFlagOrder()
    testBuildFormulaFromSource()
    testCliArgsViews()
    testUnknownFlagRejected()
    testRubyParserVersions()
    testFormulaeResolution()
    testFormulaeAmbiguity()
    testFormulaePaths()
    testKegOptLinkWins()
    testKegLinkedKegRef()
    testKegSingleVersion()
    testKegInstalledPrefix()
    testKegNewestHead()
    testKegAmbiguous()
    testKegMissing()
    testEmptyName()
    print('ok')


# -----------------------------------
#  Helper
# -----------------------------------

def newCellar() -> Cellar:
    return Cellar.init(tempfile.mkdtemp(prefix='brewargs-'))


def makeArgs(*argv: str, cellar: 'Cellar|None' = None, parse: bool = True) \
        -> Args:
    args = Args(CommandLine.capture(argv), cellar=cellar or newCellar())
    if parse:
        parseArgs(args)
    return args


def writeFile(path: str, content: str = '') -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as fp:
        fp.write(content)
    return path


def writeFormula(cellar: Cellar, tap: str, name: str, content: str) -> str:
    path = os.path.join(cellar.tapPath(tap), 'Formula', name + '.rb')
    return writeFile(path, content)


def installKeg(cellar: Cellar, name: str, *versions: str) -> list[str]:
    rv = []
    for ver in versions:
        path = os.path.join(cellar.rackPath(name), ver)
        os.makedirs(os.path.join(path, 'bin'), exist_ok=True)
        rv.append(path)
    return rv


def assertRaises(exc: type, fn: Callable[[], Any]) -> Any:
    try:
        fn()
    except exc as e:
        return e
    raise AssertionError(f'{exc.__name__} not raised')


WGET_RB = '''
class Wget < Formula
  desc "Internet file retriever"
  homepage "https://www.gnu.org/software/wget/"
  url "https://ftp.gnu.org/gnu/wget/wget-1.20.3.tar.gz"
  sha256 "31cccfc6630528db1c8e3a06f6decf2a370060b982841cfab2b8677400a5092e"

  head do
    url "https://git.savannah.gnu.org/git/wget.git"
  end

  devel do
    url "https://alpha.gnu.org/gnu/wget/wget-1.21-rc1.tar.gz"
    version "1.21-rc1"
  end

  bottle do
    sha256 "abc" => :mojave
  end

  resource "extra" do
    url "https://example.org/extra-9.9.tar.gz"
  end

  def install
    system "./configure", "--prefix=#{prefix}"
  end
end
'''


# -----------------------------------
#  Option table
# -----------------------------------

def testOptionTableIsClosed() -> None:
    names = [opt.name for opt in Options.ALL]
    assert len(names) == len(set(names))
    assert set(names) == set(ParsedOptionTable._fields)
    assert Options.BUILD_FROM_SOURCE.name == 'build_from_source'
    assert Options.HEAD.name == 'HEAD'
    assert Options.BUILD_FROM_SOURCE.spellings == ['-s', '--build-from-source']


def testOptionTableFreeze() -> None:
    builder = OptionTableBuilder()
    builder.add(Options.HEAD, True)
    builder.add(Options.CC, 'clang')
    builder.add(Options.IGNORE, ['a', 'b'])
    builder.addRemaining('wget')
    table = builder.freeze()
    assert table.HEAD is True
    assert table.cc == 'clang'
    assert table.ignore == ('a', 'b')
    assert table.devel is False
    assert builder.freeze() is table

    assertRaises(RuntimeError, lambda: builder.add(Options.DEVEL, True))
    assertRaises(RuntimeError, lambda: builder.addRemaining('curl'))
    assertRaises(TypeError, lambda: OptionTableBuilder().add(Options.CC, 1))

    args = Args(CommandLine.capture(['install', 'wget']), cellar=newCellar())
    assert not args.argsParsed
    assertRaises(RuntimeError, lambda: args.options)
    args.freezeProcessedOptions(builder)
    assert args.argsParsed
    assert args.named == ['wget']
    assertRaises(RuntimeError,
                 lambda: args.freezeProcessedOptions(OptionTableBuilder()))
    assert args.options is table


# -----------------------------------
#  Named arguments
# -----------------------------------

def testNormalizedNames() -> None:
    assert NamedArgs.normalize(['Foo', 'a/b', 'bar.tar.gz']) == \
        ['foo', 'a/b', 'bar.tar.gz']
    assert NamedArgs.normalize(['Wget', 'wget', 'CURL', 'wget']) == \
        ['wget', 'curl']
    assert NamedArgs.normalize(['Bar.TAR.GZ.x', 'Bar.tar.gz']) == \
        ['bar.tar.gz.x', 'Bar.tar.gz']

    cellar = newCellar()
    for parse in (False, True):
        args = makeArgs('install', 'Foo', 'a/b', 'FOO', 'bar.tar.gz',
                        cellar=cellar, parse=parse)
        first = args.downcasedUniqueNamed
        assert first == ['foo', 'a/b', 'bar.tar.gz'], first
        assert args.downcasedUniqueNamed == first
        assert args.downcasedUniqueNamed is first  # cached


def testNormalizedNamesKeepExistingFile() -> None:
    prev = os.getcwd()
    os.chdir(tempfile.mkdtemp(prefix='brewargs-cwd-'))
    try:
        writeFile(os.path.join(os.getcwd(), 'MyFormula.rb'))
        assert NamedArgs.normalize(['MyFormula.rb', 'Other.rb']) == \
            ['MyFormula.rb', 'other.rb']
    finally:
        os.chdir(prev)


def testCasks() -> None:
    args = makeArgs('install', 'homebrew/cask/firefox', 'wget',
                    'Homebrew/cask-fonts/font-fira-code', 'user/tap/wget')
    assert args.casks == [
        'homebrew/cask/firefox', 'Homebrew/cask-fonts/font-fira-code']
    assert NamedArgs.isCask('homebrew/homebrew-cask/firefox')
    assert not NamedArgs.isCask('homebrew/core/wget')


# -----------------------------------
#  Flags
# -----------------------------------

def testRawScanner() -> None:
    scanner = RawArgumentScanner(CommandLine.capture([
        'install', '-sv', '--cc', 'clang', '--ignore=a,b', 'wget', '-',
        '--', '--HEAD', '-s']))
    assert scanner.flags == ['-s', '-v', '--cc', '--ignore=a,b']
    assert scanner.positional() == ['wget', '-', '--HEAD', '-s']
    assert scanner.includes('--build-from-source', '-s')
    assert scanner.includes('-v')
    assert not scanner.includes('--HEAD')


def testPrePostParseAgreement() -> None:
    cellar = newCellar()
    queries = ['head', 'devel', 'buildUniversal', 'buildBottle',
               'buildFromSource', 'forceBottle', 'buildStable']
    for argv in [
        ['install', 'wget'],
        ['install', '--HEAD', 'wget'],
        ['install', 'wget', '--devel', '--universal'],
        ['install', '-s', 'wget', 'curl'],
        ['install', '--build-from-source', '--build-bottle', 'wget'],
        ['install', '--force-bottle', '--cc=clang', 'wget'],
        ['install', '--cc', 'clang', 'wget'],
        ['-v', 'install', '--HEAD', '--devel', 'wget'],
        # clustered short flags
        ['install', '-sv', 'wget'],
        ['-vs', 'install', 'wget'],
        ['install', '-qs', '--build-bottle', 'wget'],
        # no flags after `--`
        ['install', 'wget', '--', '--HEAD'],
        ['install', '--HEAD', 'wget', '--', '--devel'],
    ]:
        pre = makeArgs(*argv, cellar=cellar, parse=False)
        post = makeArgs(*argv, cellar=cellar)
        for query in queries:
            assert getattr(pre, query) == getattr(post, query), (argv, query)
        assert pre.spec() == post.spec(), argv
        assert pre.buildFlags == post.buildFlags, argv
        assert pre.downcasedUniqueNamed == post.downcasedUniqueNamed, argv
        for opt in Options.GLOBAL:
            assert pre.flag(opt) == post.flag(opt), (argv, opt)

    args = makeArgs('install', 'wget', '--', '--HEAD', cellar=cellar)
    assert args.spec() == Spec.STABLE
    assert args.named == ['wget', '--HEAD']
    assert makeArgs('install', '-sv', 'wget', cellar=cellar,
                    parse=False).buildFlags == ['--build-from-source']


def testSpecPrecedence() -> None:
    cellar = newCellar()
    for parse in (False, True):
        args = makeArgs('install', '--devel', '--HEAD', 'x', cellar=cellar,
                        parse=parse)
        assert args.spec() == Spec.HEAD
        assert args.spec(None) == Spec.HEAD

        args = makeArgs('install', '--devel', 'x', cellar=cellar, parse=parse)
        assert args.spec() == Spec.DEVEL
        assert not args.buildStable

        args = makeArgs('install', 'x', cellar=cellar, parse=parse)
        assert args.spec() == Spec.STABLE
        assert args.spec(None) is None
        assert args.spec('custom') == 'custom'
        assert args.buildStable


def testBuildFlagOrder() -> None:
    args = makeArgs('install', '--build-from-source', '--universal', 'x')
    assert args.buildFlags == ['--universal', '--build-from-source']

    args = makeArgs('install', '-s', '--build-bottle', '--universal', '--HEAD',
                    'x')
    assert args.buildFlags == [
        '--HEAD', '--universal', '--build-bottle', '--build-from-source']

    args = makeArgs('install', '--devel', '--force-bottle', 'x')
    assert args.buildFlags == []

    # read before parsing, kept after
    args = makeArgs('install', '--HEAD', 'x', parse=False)
    flags = args.buildFlags
    parseArgs(args)
    assert args.argsParsed
    assert args.buildFlags is flags


def testBuildFormulaFromSource() -> None:
    cellar = newCellar()
    writeFormula(cellar, 'homebrew/core', 'wget', WGET_RB)
    writeFormula(cellar, 'homebrew/core', 'curl', WGET_RB)

    args = makeArgs('install', '-s', 'wget', cellar=cellar)
    other = Formula(os.path.join(cellar.tapPath('homebrew/core'), 'Formula',
                                 'curl.rb'), 'homebrew/core', None, cellar)
    assert args.buildFormulaFromSource(args.formulae[0])
    assert not args.buildFormulaFromSource(other)

    args = makeArgs('install', 'wget', cellar=cellar)
    assert not args.buildFormulaFromSource(args.formulae[0])


def testCliArgsViews() -> None:
    args = makeArgs('install', '-v', 'wget', '--HEAD', '-s', '--cc=clang',
                    'curl')
    assert args.named == ['wget', 'curl']
    assert args.cliArgs == [
        '--verbose', '--HEAD', '--build-from-source', '--cc=clang']
    assert args.flagsOnly == args.cliArgs
    assert args.optionsOnly == args.cliArgs
    assert args.passthrough == ['--HEAD', '--build-from-source', '--cc=clang']

    args = makeArgs('uninstall', '--ignore=a,b', '-f', '-q', 'wget')
    assert args.cliArgs == ['--quiet', '--force', '--ignore=a,b']
    assert args.passthrough == ['--force', '--ignore=a,b']
    assert args.options.ignore == ('a', 'b')

    assertRaises(RuntimeError,
                 lambda: makeArgs('install', 'wget', parse=False).cliArgs)


def testUnknownFlagRejected() -> None:
    assertRaises(SystemExit, lambda: makeArgs('install', '--bogus', 'wget'))
    # no prefix matching, raw scan would not see it either
    assertRaises(SystemExit, lambda: makeArgs('install', '--dev', 'wget'))


# -----------------------------------
#  Formula lookup
# -----------------------------------

def testRubyParserVersions() -> None:
    path = writeFile(os.path.join(tempfile.mkdtemp(), 'wget.rb'), WGET_RB)
    assert RubyParser(path).parseVersions() == {
        'stable': '1.20.3', 'devel': '1.21-rc1', 'head': 'HEAD'}
    assert RubyParser.versionFromUrl(
        'https://github.com/jqlang/jq/archive/refs/tags/v1.7.1.tar.gz') \
        == '1.7.1'
    assertRaises(FileNotFoundError, lambda: RubyParser(path + '.missing'))


def testFormulaeResolution() -> None:
    cellar = newCellar()
    writeFormula(cellar, 'homebrew/core', 'wget', WGET_RB)
    writeFormula(cellar, 'alice/tools', 'wget', WGET_RB)
    writeFormula(cellar, 'alice/tools', 'ripgrep', 'url "rg-14.1.0.tar.gz"')

    args = makeArgs('install', 'WGET', 'ripgrep', 'homebrew/core/wget',
                    'homebrew/cask/firefox', cellar=cellar)
    assert [f.fullName for f in args.formulae] == ['wget', 'alice/tools/ripgrep']
    assert [f.spec for f in args.formulae] == [Spec.STABLE, Spec.STABLE]
    assert args.formulae[0].version == '1.20.3'
    assert args.formulae is args.formulae  # cached
    assert args.casks == ['homebrew/cask/firefox']

    args = makeArgs('install', '--devel', 'alice/tools/wget', cellar=cellar)
    assert [f.fullName for f in args.formulae] == ['alice/tools/wget']
    assert args.formulae[0].version == '1.21-rc1'

    # lightweight mode does not pin a spec
    args = makeArgs('info', 'wget', cellar=cellar)
    assert args.resolvedFormulae[0].spec is None
    args = makeArgs('install', '--HEAD', 'wget', cellar=cellar)
    assert args.resolvedFormulae[0].spec == Spec.HEAD
    assert args.resolvedFormulae[0].version == 'HEAD'

    # by path
    path = writeFile(os.path.join(tempfile.mkdtemp(), 'Local.rb'), WGET_RB)
    args = makeArgs('install', path, cellar=cellar)
    assert args.formulae[0].name == 'Local'
    assert args.formulae[0].tap is None

    args = makeArgs('install', 'nonexistent', cellar=cellar)
    err = assertRaises(FormulaUnavailableError, lambda: args.formulae)
    assert err.name == 'nonexistent'


def testFormulaeAmbiguity() -> None:
    cellar = newCellar()
    writeFormula(cellar, 'alice/tools', 'jq', 'url "jq-1.7.tar.gz"')
    writeFormula(cellar, 'bob/tools', 'jq', 'url "jq-1.6.tar.gz"')

    args = makeArgs('install', 'jq', cellar=cellar)
    err = assertRaises(TapFormulaAmbiguityError, lambda: args.formulae)
    assert err.taps == ['alice/tools', 'bob/tools']
    assert 'alice/tools/jq' in str(err)

    args = makeArgs('install', 'bob/homebrew-tools/jq', cellar=cellar)
    assert args.formulae[0].fullName == 'bob/tools/jq'
    assert args.formulae[0].version == '1.6'


def testFormulaePaths() -> None:
    cellar = newCellar()
    core = writeFormula(cellar, 'homebrew/core', 'wget', WGET_RB)
    other = writeFormula(cellar, 'alice/tools', 'jq', 'url "jq-1.7.tar.gz"')

    args = makeArgs('info', 'wget', 'Wget', 'jq', 'unknown', cellar=cellar)
    assert args.formulaePaths == [
        core, other,
        os.path.join(cellar.tapPath('homebrew/core'), 'Formula', 'unknown.rb'),
    ]


# -----------------------------------
#  Kegs
# -----------------------------------

def testKegOptLinkWins() -> None:
    cellar = newCellar()
    v1, v2 = installKeg(cellar, 'wget', '1.0', '2.0')
    os.symlink(os.path.relpath(v1, cellar.opt),
               os.path.join(cellar.opt, 'wget'))
    # linked-keg ref must not win over opt
    os.symlink(v2, os.path.join(cellar.linked, 'wget'))

    args = makeArgs('uninstall', 'wget', cellar=cellar)
    assert [x.path for x in args.kegs] == [os.path.realpath(v1)]
    assert args.kegs[0].name == 'wget'
    assert args.kegs[0].version == '1.0'


def testKegLinkedKegRef() -> None:
    cellar = newCellar()
    v1, v2 = installKeg(cellar, 'wget', '1.0', '2.0')
    # dangling opt link is ignored
    os.symlink(os.path.join(cellar.rackPath('wget'), '0.9'),
               os.path.join(cellar.opt, 'wget'))
    os.symlink(v2, os.path.join(cellar.linked, 'wget'))

    args = makeArgs('uninstall', 'WGET', cellar=cellar)
    assert [x.path for x in args.kegs] == [os.path.realpath(v2)]


def testKegSingleVersion() -> None:
    cellar = newCellar()
    (v1,) = installKeg(cellar, 'wget', '1.0')
    installKeg(cellar, 'curl', '8.0')
    args = makeArgs('uninstall', 'wget', 'curl', 'wget', cellar=cellar)
    assert [x.path for x in args.kegs] == [
        v1, os.path.join(cellar.rackPath('curl'), '8.0')]


def testKegInstalledPrefix() -> None:
    cellar = newCellar()
    writeFormula(cellar, 'homebrew/core', 'wget', WGET_RB)
    installKeg(cellar, 'wget', '1.19', '1.20.3')
    args = makeArgs('uninstall', 'wget', cellar=cellar)
    assert args.kegs[0].path == os.path.join(cellar.rackPath('wget'), '1.20.3')

    # formula knows the versions, but none of them is installed
    installKeg(cellar, 'curl', '7.0', '8.0')
    writeFormula(cellar, 'homebrew/core', 'curl', 'url "curl-8.9.tar.gz"')
    args = makeArgs('uninstall', 'curl', cellar=cellar)
    assertRaises(MultipleVersionsInstalledError, lambda: args.kegs)


def testKegNewestHead() -> None:
    cellar = newCellar()
    writeFormula(cellar, 'homebrew/core', 'wget', WGET_RB)
    new, old = installKeg(cellar, 'wget', 'HEAD-aaa', 'HEAD-bbb')
    os.utime(old, (1000, 1000))
    os.utime(new, (2000, 2000))
    args = makeArgs('uninstall', 'wget', cellar=cellar)
    assert args.kegs[0].path == new


def testKegAmbiguous() -> None:
    cellar = newCellar()
    dirs = installKeg(cellar, 'wget', '1.0', '2.0')
    args = makeArgs('uninstall', 'wget', cellar=cellar)
    err = assertRaises(MultipleVersionsInstalledError, lambda: args.kegs)
    assert err.dirs == dirs
    assert err.rack == cellar.rackPath('wget')
    assert 'delete' in str(err)

    # ambiguous tap lookup does not break the tie either
    writeFormula(cellar, 'alice/tools', 'wget', WGET_RB)
    writeFormula(cellar, 'bob/tools', 'wget', WGET_RB)
    args = makeArgs('uninstall', 'wget', cellar=cellar)
    assertRaises(MultipleVersionsInstalledError, lambda: args.kegs)


def testKegMissing() -> None:
    cellar = newCellar()
    installKeg(cellar, 'wget', '1.0')
    os.makedirs(cellar.rackPath('empty'))

    args = makeArgs('uninstall', 'wgett', cellar=cellar)
    err = assertRaises(NoSuchKegError, lambda: args.kegs)
    assert err.name == 'wgett'
    assert err.suggestion == 'Did you mean "wget"?'

    args = makeArgs('uninstall', 'empty', cellar=cellar)
    err = assertRaises(NoSuchKegError, lambda: args.kegs)
    assert err.rack == cellar.rackPath('empty')

    os.makedirs(os.path.join(cellar.caskroom, 'firefox', '120.0'))
    args = makeArgs('uninstall', 'firefox', cellar=cellar)
    err = assertRaises(NoSuchKegError, lambda: args.kegs)
    assert 'brew cask uninstall firefox' in (err.suggestion or '')


def testEmptyName() -> None:
    cellar = newCellar()
    installKeg(cellar, 'wget', '1.0')
    for parse in (False, True):
        args = makeArgs('uninstall', 'wget', '', cellar=cellar, parse=parse)
        assertRaises(UsageError, lambda: args.kegs)
        assertRaises(UsageError, lambda: args.formulae)
    assert Config.NAMES.ARCHIVE_SUFFIXES == ('.tar.gz',)


if __name__ == '__main__':
    main()
