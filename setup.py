
# ╔══════════════════════════════════════════════════════════════════════╗
# ║  lmsdiffusion — LMS sampling core for latent diffusion               ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
lmsdiffusion build configuration.

Pure-Python package; NumPy does the numerics.

Build
-----
    pip install -e .                          # editable install
    pip install -e .[dev]                     # with test tooling
    python setup.py bdist_wheel               # wheel
"""
import os

from setuptools import setup

# ── Package metadata ──
_readme = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'README.md')
if os.path.isfile(_readme):
    with open(_readme, 'r', encoding='utf-8') as fh:
        long_description = fh.read()
else:
    long_description = ''

setup(
    name='lmsdiffusion',
    version='0.1.0',
    author='Pictofeed, LLC',
    author_email='engineering@pictofeed.io',
    description=(
        'Linear multistep (LMS) sampling core for latent diffusion '
        'text-to-image models'
    ),
    long_description=long_description,
    long_description_content_type='text/markdown',
    license='Proprietary',

    package_dir={
        'lmsdiffusion': '.',
        'lmsdiffusion.diffusion': 'diffusion',
    },
    packages=[
        'lmsdiffusion',
        'lmsdiffusion.diffusion',
    ],

    python_requires='>=3.10',
    install_requires=[
        'numpy>=1.24',
        'tqdm>=4.60',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0',
        ],
    },

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'License :: Other/Proprietary License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Artificial Intelligence',
    ],
    zip_safe=False,
)
