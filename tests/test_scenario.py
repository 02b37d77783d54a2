"""End-to-end: draft -> format_json over a carousel, rows landing in a table.

Wires the executor exactly as the HTTP app does (build_executor) with a
StubDriver in place of the model backend.
"""

from botticelli.config import build_executor, get_config
from botticelli.loader import parse

WEEKLY_POSTS = """
[narrative]
name = "posts"
description = "Draft a post, then format it for storage"

[toc]
order = ["draft", "format_json"]
carousel = 2

[tables.previous]
table = "posts"
columns = ["title"]
format = "json"

[acts]
draft = [
    { ref = "tables.previous", history_retention = "summary" },
    "Write a short post that is different from the ones above.",
]
format_json = "Return the post as JSON with keys title and likes."
"""


def _executor(tmp_path, repository, driver):
    return build_executor(get_config(tmp_path), repository, driver=driver)


async def test_two_iterations_store_two_rows(tmp_path, repository, stub_driver) -> None:
    driver = stub_driver([
        "Lighthouses keep watch.",
        '```json\n{"title": "One", "likes": 1}\n```',
        "Harbours keep boats.",
        'Here it is: {"title": "Two", "likes": 2}',
    ])
    result = await _executor(tmp_path, repository, driver).run(parse(WEEKLY_POSTS))

    assert result.ok
    assert result.processor_errors == []
    assert len(result.execution.act_executions) == 4
    driver.assert_exhausted()

    rows = repository.get_rows("posts")
    assert [(r["title"], r["likes"]) for r in rows] == [("One", 1), ("Two", 2)]
    assert {r["source_act"] for r in rows} == {"format_json"}

    (record,) = repository.list_generations("posts")
    assert record.status == "success"
    assert record.row_count == 2
    assert record.source_narrative == "posts"


async def test_second_iteration_reads_rows_from_first(tmp_path, repository, stub_driver) -> None:
    driver = stub_driver([
        "d1", '{"title": "One", "likes": 1}',
        "d2", '{"title": "Two", "likes": 2}',
    ])
    await _executor(tmp_path, repository, driver).run(parse(WEEKLY_POSTS))

    first_draft = driver.requests[0].messages[-1]
    assert first_draft.parts[0].row_count == 0
    second_draft = driver.requests[2].messages[-1]
    assert second_draft.parts[0].row_count == 1
    assert '"title": "One"' in second_draft.parts[0].text


async def test_conflicting_row_reported_not_fatal(tmp_path, repository, stub_driver) -> None:
    driver = stub_driver([
        "d1", '{"title": "One", "likes": 1}',
        "d2", '{"title": "oops", "likes": "many"}',
    ])
    result = await _executor(tmp_path, repository, driver).run(parse(WEEKLY_POSTS))

    assert result.ok
    (failure,) = result.processor_errors
    assert failure.processor == "content_generation"
    assert failure.iteration == 2
    assert "column 'likes'" in failure.message
    assert [r["title"] for r in repository.get_rows("posts")] == ["One"]
    (record,) = repository.list_generations()
    assert record.status == "success"
    assert record.row_count == 1


async def test_unparseable_output_marks_generation_failed(tmp_path, repository, stub_driver) -> None:
    driver = stub_driver([
        "d1", '{"title": "One", "likes": 1}',
        "d2", "Sorry, I cannot do that.",
    ])
    result = await _executor(tmp_path, repository, driver).run(parse(WEEKLY_POSTS))

    assert result.ok
    assert "no JSON found" in result.processor_errors[0].message
    (record,) = repository.list_generations()
    assert record.status == "failed"
    assert record.row_count == 1


async def test_skip_content_generation(tmp_path, repository, stub_driver) -> None:
    text = WEEKLY_POSTS.replace('description = ', 'skip_content_generation = true\ndescription = ')
    driver = stub_driver(["d1", '{"title": "One"}', "d2", '{"title": "Two"}'])
    result = await _executor(tmp_path, repository, driver).run(parse(text))

    assert result.ok
    assert repository.list_tables() == []
