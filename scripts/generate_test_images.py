"""
Generate RGBA benchmark inputs for the test_images dataset.
Writes PNGs at a range of sizes and complexities plus test_metadata.json.
Run: python scripts/generate_test_images.py [--sizes 320x240 1920x1080]
"""
import argparse
import json
import os
import sys

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, BASE_DIR)

from utils import create_synthetic_test_image, save_rgba_image  # noqa: E402

TEST_DIR = os.path.join(BASE_DIR, 'test_images')

DEFAULT_SIZES = ['320x240', '640x480', '1280x720', '1920x1080', '3840x2160']
COMPLEXITIES = ['simple', 'moderate', 'complex']


def parse_size(text):
    w, h = text.lower().split('x')
    return int(w), int(h)


def generate(sizes, out_dir=TEST_DIR, seed=0):
    os.makedirs(out_dir, exist_ok=True)
    metadata = {}
    for size in sizes:
        w, h = parse_size(size)
        for complexity in COMPLEXITIES:
            rel = f'{complexity}/{w}x{h}.png'
            out_path = os.path.join(out_dir, rel)
            os.makedirs(os.path.dirname(out_path), exist_ok=True)
            buf = create_synthetic_test_image(w, h, complexity=complexity, seed=seed)
            save_rgba_image(buf, out_path)
            metadata[rel] = {'width': w, 'height': h, 'pixel_count': w * h, 'complexity': complexity}
            print('WROTE', out_path)
    meta_path = os.path.join(out_dir, 'test_metadata.json')
    with open(meta_path, 'w', encoding='utf-8') as f:
        json.dump(metadata, f, indent=2)
    print('WROTE', meta_path)
    return metadata


if __name__ == '__main__':
    p = argparse.ArgumentParser()
    p.add_argument('--sizes', nargs='+', default=DEFAULT_SIZES)
    p.add_argument('--output-dir', default=TEST_DIR)
    p.add_argument('--seed', type=int, default=0)
    a = p.parse_args()
    generate(a.sizes, a.output_dir, a.seed)
