"""
Run the OCR rescan or the storage sync from the command line.

    python scripts/rescan_pdfs.py            # rescan every stored PDF
    python scripts/rescan_pdfs.py --file ID  # rescan one PDF
    python scripts/rescan_pdfs.py --sync     # import blobs uploaded straight to S3
"""
import argparse
import os

from knowledgebase import create_app
from knowledgebase.services import knowledge_service, rescan_service


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--file", help="rescan a single file id")
    parser.add_argument("--sync", action="store_true", help="import unmanaged S3 objects instead of rescanning")
    args = parser.parse_args(argv)

    app = create_app(os.getenv("FLASK_ENV", "production"))
    with app.app_context():
        if args.sync:
            stats = rescan_service.sync_storage(on_progress=print)
            print(f"Done. Synced {stats['synced']}  skipped {stats['skipped']}  errors {stats['errors']}")
            return 1 if stats["errors"] else 0

        if args.file:
            kf = rescan_service.rescan_single_pdf(knowledge_service.get_file(args.file), on_progress=print)
            print(f"Done. {kf.name}  {kf.content_length} chars  {kf.ocr_status}")
            return 0

        stats = rescan_service.rescan_all_pdfs(on_progress=print)
        print(f"Done. Rescanned {stats['rescanned']}  errors {stats['errors']}")
        return 1 if stats["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
