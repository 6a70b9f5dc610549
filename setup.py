from setuptools import setup
pname='eagleregion'
setup(name=pname,
      version='0.1',
      description='region-indexed reader for sharded EAGLE snapshots',
      author='Marcelo Alvarez',
      license='MIT',
      packages=[pname, f'{pname}.utils'],
      python_requires='>=3.10',
      install_requires=[
        'numpy',
        'scipy',
        'h5py',
        'pyyaml',
      ],
      extras_require={
        'test': ['pytest'],
      },
      zip_safe=False)
