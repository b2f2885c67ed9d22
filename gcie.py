#!/usr/bin/env python3
"""
gcie.py - GameCube ISO Extractor

Lists or extracts files from a GameCube disc image, including files stored
inside nested .tgc containers.

Usage:
    gcie.py [IMAGE] [-e PATTERN | -l {json,text}] [-o DIR] [-v]

Without -e or -l, the PAL Ocarina of Time (and Master Quest) ROMs are
extracted if the image contains them.
"""

import argparse
import json
import os
import sys

import fst

LIST_JSON = "FileList.json"
LIST_TEXT = "FileList.txt"


# =============================================================================
# Image path handling
# =============================================================================

def trim_path(path):
    path = path.strip()
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        path = path[1:-1]
    return path


def is_valid_image(path):
    return bool(path) and os.path.isfile(path)


def prompt_image_path():
    while True:
        print("Please enter the file path of your GC ISO:")
        path = trim_path(input())
        if is_valid_image(path):
            return path


# =============================================================================
# File lists
# =============================================================================

def write_json_list(listed, output_dir):
    out_path = os.path.join(output_dir, LIST_JSON)
    records = [
        {
            "FileOffset": f.file_offset,
            "Size": f.size,
            "Name": f.name,
            "FullName": f.full_name,
        }
        for f in listed
    ]
    with open(out_path, "w", encoding="utf-8") as out:
        json.dump(records, out, indent=2)
        out.write("\n")
    return out_path


def write_text_list(listed, output_dir):
    out_path = os.path.join(output_dir, LIST_TEXT)
    size_w = max((len(str(f.size)) for f in listed), default=0)
    name_w = max((len(f.name) for f in listed), default=0)

    def row(offset, size, name, full_name):
        return f"{offset.rjust(10)} {size.rjust(size_w)} {name.ljust(name_w)} {full_name}\n"

    with open(out_path, "w", encoding="utf-8") as out:
        out.write(row("FileOffset", "Size", "Name", "FullName"))
        out.write(row("-" * 10, "-" * 4, "-" * 4, "-" * 8))
        for f in listed:
            out.write(row(str(f.file_offset), str(f.size), f.name, f.full_name))
    return out_path


LIST_WRITERS = {
    "json": write_json_list,
    "text": write_text_list,
}


# =============================================================================
# Main
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="List or extract files from a GameCube disc image"
    )
    parser.add_argument("image", nargs="?", help="GameCube disc image (ISO/GCM)")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-e", "--extract", metavar="PATTERN",
                      help="Extract every file whose full path contains PATTERN")
    mode.add_argument("-l", "--list-files", metavar="FORMAT",
                      type=str.lower, choices=sorted(LIST_WRITERS),
                      help="Write a file list (json or text)")
    parser.add_argument("-o", "--output-dir", default=os.getcwd(),
                        help="Output directory (default: current directory)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Show detailed output")

    args = parser.parse_args(argv)

    image = trim_path(args.image) if args.image else ""
    if not is_valid_image(image):
        try:
            image = prompt_image_path()
        except EOFError:
            print("Error: no disc image given", file=sys.stderr)
            return 1

    output_dir = os.path.abspath(args.output_dir)

    try:
        with open(image, "rb") as fp:
            files = fst.read_disc(fp, verbose=args.verbose)
            if args.verbose:
                print(f"{len(files)} files in {image}")

            if args.list_files:
                os.makedirs(output_dir, exist_ok=True)
                out_path = LIST_WRITERS[args.list_files](fst.list_files(files), output_dir)
                print(f"File list written to: {out_path}")
            elif args.extract:
                written = fst.extract_matching(fp, files, args.extract, output_dir,
                                               verbose=args.verbose)
                if not written:
                    print(f"Couldn't find any file or path matching '{args.extract}'.")
                else:
                    print(f"Extracted {len(written)} file(s) to: {output_dir}")
            else:
                written = fst.extract_well_known(fp, files, output_dir,
                                                 verbose=args.verbose)
                if not written:
                    print("Couldn't find any PAL OoT or MQ ROM.")
                for out_path in written:
                    print(f"Extracted: {out_path}")
    except FileExistsError as e:
        print(f"Error: {e.filename} already exists", file=sys.stderr)
        return 1
    except (fst.FSTError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
