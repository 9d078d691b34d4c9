# encoding: utf-8
from setuptools import setup


setup(
    name='desim',
    version='0.1.0',
    description='Event-oriented discrete event simulation kernel',
    long_description=open('README.rst', 'rb').read().decode('utf-8'),
    license='MIT',
    python_requires='>=3.6',
    install_requires=['simpy', 'pyvcd', 'PyYAML', 'numpy', 'scipy'],
    extras_require={'test': ['pytest']},
    packages=['desim'],
    include_package_data=True,
    classifiers=[
        'Development Status :: 4 - Beta',
        'Environment :: Console',
        'Intended Audience :: Developers',
        'Intended Audience :: Education',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: MIT License',
        'Natural Language :: English',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: Implementation :: CPython',
        'Topic :: Scientific/Engineering',
    ],
)
