import sys

from invoke import run, task


class g:
    test_success = False


@task
def test(ctx):
    test_cmd = [
        "pytest",  # Test command
        "--cov-report term-missing",  # Print only uncovered lines to stdout
        "--cov graphql_multipart",  # Test only this package
        "--timeout=30",  # Each test should timeout after 30 sec
    ]

    # Test in this directory
    test_cmd.append("tests")

    res = run(" ".join(test_cmd), pty=False, warn=True)
    g.test_success = res.ok


@task
def fuzz(ctx, target="form", runs=10000):
    """Run one of the atheris harnesses in fuzz/ for a fixed number of runs."""
    run(f"cd fuzz && python fuzz_{target}.py -runs={runs}", pty=False)


@task(pre=[test])
def build(ctx):
    if not g.test_success:
        print("Tests must pass before building!", file=sys.stderr)
        return

    run("python setup.py sdist bdist_wheel")
