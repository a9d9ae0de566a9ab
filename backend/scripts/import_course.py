"""CLI script to load a course (lessons and quizzes included) from a JSON file.
Usage: python scripts/import_course.py path/to/course.json
"""
import sys
import argparse
import json
import pathlib
# Ensure `backend/` is on sys.path so `coursetrack` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from coursetrack.database import engine, create_db_and_tables
from coursetrack import services
from coursetrack.errors import InvalidInputError, NotFoundError


def main(path: pathlib.Path) -> int:
    """Create the course described in `path` and print a summary.

    The file holds one course document, or a list of them, in the shape
    accepted by `CatalogService.import_course`.
    """
    if not path.exists():
        print(f'File not found: {path}')
        return 1
    data = json.loads(path.read_text(encoding='utf-8'))
    docs = data if isinstance(data, list) else [data]
    create_db_and_tables()
    failures = 0
    with Session(engine) as session:
        svc = services.CatalogService(session)
        for doc in docs:
            try:
                result = svc.import_course(doc)
                print(f"Imported course {result['course_id']}: {result['lessons']} lessons, {result['quizzes']} quizzes")
            except (InvalidInputError, NotFoundError) as e:
                failures += 1
                print(f"Error importing {doc.get('title') if isinstance(doc, dict) else doc!r}: {e}")
    return 1 if failures else 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('path', type=pathlib.Path, help='JSON file with a course document')
    args = parser.parse_args()
    sys.exit(main(args.path))
